"""
dropkick command line

Build bootable images for a single service binary and publish them to EC2 or
Oxide.
"""

import argparse
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import shutil
import signal
import sys
import tempfile
from typing import Any, Callable, Dict, List, Optional

from dropkick import __version__
from dropkick.build import BuildOutput, build
from dropkick.distro import UbuntuImageFetcher
from dropkick.ec2 import Ec2Publisher
from dropkick.image import prepare_image
from dropkick.manifest import Manifest
from dropkick.naming import image_name, oxide_image_name
from dropkick.oxide import OxidePublisher
from dropkick.settings import Settings

logger = logging.getLogger("dropkick")

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
INTERRUPTED_EXIT_CODE = 130


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Configure root logging for the command line.

    Args:
        level: Log level name
        log_file: Also write the log to this file
    """
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def _raise_interrupt(signum: int, frame: Any) -> None:
    raise KeyboardInterrupt(signal.Signals(signum).name)


def install_signal_handlers() -> None:
    """Treat SIGTERM and SIGHUP like Ctrl-C so cleanup runs before exit."""
    for signum in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(signum, _raise_interrupt)


def banner(title: str, level: int = logging.INFO) -> None:
    logger.log(level, "")
    logger.log(level, "=" * 80)
    logger.log(level, title)
    logger.log(level, "=" * 80)


def _fetcher(settings: Settings) -> UbuntuImageFetcher:
    return UbuntuImageFetcher(cache_dir=settings.cache_dir, keyring=settings.keyring)


def _build_image(manifest: Manifest, workdir: str) -> BuildOutput:
    banner("Building Image")
    logger.info(f"Service binary: {manifest.service_binary}")
    logger.info(f"Hostname: {manifest.hostname}")
    return build(manifest, workdir)


def _provenance_result(output: BuildOutput) -> Dict[str, Any]:
    provenance = output.provenance
    return {
        "package_name": provenance.package_name,
        "package_version": provenance.package_version,
        "store_hash": provenance.store_hash,
        "nixos_version": provenance.nixos_version,
        "inputs": {
            name: {"last_modified": revision.last_modified, "rev": revision.rev}
            for name, revision in sorted(provenance.inputs.items())
        },
    }


def command_build(args: argparse.Namespace, settings: Settings) -> Dict[str, Any]:
    manifest = Manifest.from_args(args)
    with tempfile.TemporaryDirectory(prefix="dropkick-build-") as workdir:
        output = _build_image(manifest, workdir)
        destination = Path(args.output)
        shutil.move(str(output.image), str(destination))
    logger.info(f"✓ Image written to {destination}")

    result = _provenance_result(output)
    result["image"] = str(destination)
    return result


def command_create_ec2_image(args: argparse.Namespace, settings: Settings) -> Dict[str, Any]:
    manifest = Manifest.from_args(args)
    publisher = Ec2Publisher(region=args.region, upload_zero_blocks=not args.no_zero_blocks)
    with tempfile.TemporaryDirectory(prefix="dropkick-build-") as workdir:
        output = _build_image(manifest, workdir)

        banner("Publishing EC2 Image")
        image_id = publisher.publish(output.image, output.provenance, stack=args.stack)

    result = _provenance_result(output)
    result.update({
        "image_id": image_id,
        "image_name": image_name(output.provenance),
        "region": publisher.session.region_name,
        "stack": args.stack,
    })
    return result


def command_create_oxide_image(args: argparse.Namespace, settings: Settings) -> Dict[str, Any]:
    manifest = Manifest.from_args(args)
    publisher = OxidePublisher(args.project)
    with tempfile.TemporaryDirectory(prefix="dropkick-build-") as workdir:
        output = _build_image(manifest, workdir)

        banner("Publishing Oxide Image")
        resource_id = publisher.publish(
            output.image,
            output.provenance,
            hostname=manifest.hostname,
            deploy=args.deploy,
        )

    result = _provenance_result(output)
    result.update({
        "image_name": oxide_image_name(output.provenance),
        "project": args.project,
        "instance_id" if args.deploy else "image_id": resource_id,
    })
    return result


def command_prepare_image(args: argparse.Namespace, settings: Settings) -> Dict[str, Any]:
    banner("Preparing Ubuntu Image")
    output = prepare_image(
        args.output,
        args.service_binary,
        _fetcher(settings),
        serial=args.serial,
        tempdir=args.tmpdir,
    )
    logger.info(f"✓ Image written to {output}")
    return {"image": str(output), "serial": args.serial}


def command_fetch_base_image(args: argparse.Namespace, settings: Settings) -> Dict[str, Any]:
    banner("Fetching Ubuntu Base Image")
    fetcher = _fetcher(settings)
    serial = fetcher.resolve_serial(args.serial)
    path = fetcher.fetch(serial)
    logger.info(f"✓ Base image: {path}")
    return {"image": str(path), "serial": serial}


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--output-file',
        type=str,
        default='dropkick_result.json',
        help='Output file for the command result (default: dropkick_result.json)'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        help='Log level (default: $DROPKICK_LOG_LEVEL or INFO)'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        default=None,
        help='Also write the log to this file'
    )


def _add_manifest_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group('manifest')
    group.add_argument('--manifest', type=str, help='JSON manifest file (replaces the flags below)')
    group.add_argument('--service-binary', type=str, help='Service executable to embed in the image')
    group.add_argument('--hostname', type=str, help='Hostname the service answers to')
    group.add_argument('--bin-name', type=str, default=None, help='Binary name inside the image')
    group.add_argument('--package-name', type=str, default=None, help='Package name used for image naming')
    group.add_argument('--package-version', type=str, default=None, help='Package version (default: 0.0.0)')
    group.add_argument('--port', type=int, default=8000, help='Port the service listens on (default: 8000)')
    group.add_argument('--allow-login', action='store_true', help='Enable SSH login')
    group.add_argument('--run-args', type=str, default=None, help='Extra arguments for the service')
    group.add_argument('--env-file', type=str, default=None, help='Environment file for the service')
    group.add_argument(
        '--nixpkgs',
        action='append',
        default=[],
        help='Extra nixpkgs package to install (repeatable)'
    )
    group.add_argument('--test-cert', action='store_true', help="Use Let's Encrypt staging certificates")
    group.add_argument('--show-nix-trace', action='store_true', help='Pass --show-trace to nix')
    group.add_argument('--flake-lock', type=str, default=None, help='Base flake.lock for the build')


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog='dropkick',
        description='Build and publish bootable images for a single service binary'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    subparsers = parser.add_subparsers(dest='command', required=True)

    build_parser = subparsers.add_parser('build', help='Build a disk image')
    build_parser.add_argument('--output', type=str, required=True, help='Path of the finished image')
    _add_manifest_arguments(build_parser)
    build_parser.set_defaults(func=command_build)

    ec2_parser = subparsers.add_parser('create-ec2-image', help='Build an image and register it as an AMI')
    ec2_parser.add_argument('--region', type=str, default=None, help='AWS region (default: from AWS config)')
    ec2_parser.add_argument('--stack', type=str, default=None, help='CloudFormation stack to update')
    ec2_parser.add_argument(
        '--no-zero-blocks',
        action='store_true',
        help='Skip uploading all-zero blocks to the snapshot'
    )
    _add_manifest_arguments(ec2_parser)
    ec2_parser.set_defaults(func=command_create_ec2_image)

    oxide_parser = subparsers.add_parser('create-oxide-image', help='Build an image and import it into Oxide')
    oxide_parser.add_argument('--project', type=str, required=True, help='Oxide project')
    oxide_parser.add_argument('--deploy', action='store_true', help='Also create an instance from the image')
    _add_manifest_arguments(oxide_parser)
    oxide_parser.set_defaults(func=command_create_oxide_image)

    prepare_parser = subparsers.add_parser('prepare-image', help='Install a service into an Ubuntu cloud image')
    prepare_parser.add_argument('service_binary', metavar='SERVICE_BINARY', help='Service executable')
    prepare_parser.add_argument('--output', type=str, required=True, help='Path of the finished image')
    prepare_parser.add_argument('--serial', type=str, default=None, help='Ubuntu image serial (default: current)')
    prepare_parser.add_argument('--tmpdir', type=str, default=None, help='Directory for scratch files')
    prepare_parser.set_defaults(func=command_prepare_image)

    fetch_parser = subparsers.add_parser('fetch-base-image', help='Download and verify the Ubuntu base image')
    fetch_parser.add_argument('--serial', type=str, default=None, help='Ubuntu image serial (default: current)')
    fetch_parser.set_defaults(func=command_fetch_base_image)

    for subparser in subparsers.choices.values():
        _add_common_arguments(subparser)

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the dropkick command line."""
    args = parse_arguments(argv)
    settings = Settings.from_env()
    setup_logging(args.log_level or settings.log_level, args.log_file)
    install_signal_handlers()

    func: Callable[[argparse.Namespace, Settings], Dict[str, Any]] = args.func

    banner(f"dropkick {args.command}")

    try:
        result = func(args, settings)
        result["command"] = args.command
        result["timestamp"] = datetime.now(timezone.utc).isoformat()

        with open(args.output_file, 'w') as f:
            json.dump(result, f, indent=2)
        logger.info(f"Result written to {args.output_file}")
        return 0

    except KeyboardInterrupt:
        banner("INTERRUPTED", logging.WARNING)
        return INTERRUPTED_EXIT_CODE

    except Exception as e:
        banner(f"{args.command.upper()} FAILED", logging.ERROR)
        logger.error(f"Error: {e}")
        logger.error("=" * 80)
        return 1


if __name__ == '__main__':
    sys.exit(main())
