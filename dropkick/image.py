"""
Base image preparation

Turn a verified Ubuntu cloud image into a raw disk image with a service
binary installed and enabled, working on the mounted root partition.
"""

from importlib import resources
import logging
import os
from pathlib import Path
import shutil
import tempfile
from types import TracebackType
from typing import Optional, Type, Union

from dropkick import command
from dropkick.distro import UbuntuImageFetcher
from dropkick.kpartx import PartitionMap
from dropkick.mount import MountPoint

logger = logging.getLogger(__name__)

SERVICE_BINARY_PATH = "usr/local/bin/dropshot-service"
SERVICE_UNIT_PATH = "etc/systemd/system/dropshot.service"
SERVICE_WANTS_PATH = "etc/systemd/system/multi-user.target.wants/dropshot.service"


def service_unit_path() -> Path:
    """Location of the bundled systemd unit for the service."""
    return Path(str(resources.files("dropkick") / "data" / "dropshot.service"))


class ImageContext:
    """
    A base image unpacked to a raw file and mounted for modification.

    Use as a context manager. Leaving the block normally unmounts, unmaps
    and moves the image to ``output_path``; leaving it with an exception
    tears everything down and discards the partially built image.

    Args:
        output_path: Where the finished raw image is written
        fetcher: Source of the verified base image
        serial: Base image serial (None for the current one)
        tempdir: Directory for the working image and mount point (defaults to the output directory)
    """

    def __init__(
        self,
        output_path: Union[str, Path],
        fetcher: UbuntuImageFetcher,
        serial: Optional[str] = None,
        tempdir: Optional[Union[str, Path]] = None,
    ) -> None:
        self.output_path = Path(output_path)
        self.fetcher = fetcher
        self.serial = serial
        self.tempdir = Path(tempdir) if tempdir else self.output_path.parent
        self.image_path: Optional[Path] = None
        self.mount_point: Optional[MountPoint] = None

    @property
    def root(self) -> Path:
        """Root of the mounted guest filesystem."""
        if self.mount_point is None:
            raise RuntimeError("image is not mounted")
        return self.mount_point.path

    def open(self) -> "ImageContext":
        """Fetch, unpack, map and mount the base image."""
        base_image = self.fetcher.fetch(self.serial)

        # created before escalating so the file is owned by the invoking user
        fd, name = tempfile.mkstemp(prefix=".dropkick-", suffix=".raw", dir=self.tempdir)
        os.close(fd)
        self.image_path = Path(name)

        try:
            command.run(["qemu-img", "convert", "-O", "raw", base_image, self.image_path])
            partition_map = PartitionMap.create(self.image_path)
            self.mount_point = MountPoint.create(partition_map, tempdir_in=self.tempdir)
        except BaseException:
            self._discard_image()
            raise

        return self

    def install_service(self, service_binary: Union[str, Path]) -> None:
        """
        Install ``service_binary`` into the guest and enable it at boot.

        Args:
            service_binary: Executable to run as the guest's service
        """
        root = self.root
        logger.info(f"Copying {service_binary} to /{SERVICE_BINARY_PATH}")
        command.run(["install", "-D", "-m", "0755", service_binary, root / SERVICE_BINARY_PATH], sudo=True)

        logger.info("Writing dropshot.service unit")
        command.run(["install", "-D", "-m", "0644", service_unit_path(), root / SERVICE_UNIT_PATH], sudo=True)
        command.run(["mkdir", "-p", (root / SERVICE_WANTS_PATH).parent], sudo=True)
        command.run(["ln", "-sf", f"/{SERVICE_UNIT_PATH}", root / SERVICE_WANTS_PATH], sudo=True)

    def finish(self) -> Path:
        """
        Unmount, unmap and move the image into place.

        Returns:
            The output path
        """
        if self.mount_point is None or self.image_path is None:
            raise RuntimeError("image is not open")

        image = self.mount_point.release()
        self.mount_point = None
        try:
            shutil.move(str(image), str(self.output_path))
        finally:
            # No-op after a successful move; removes the scratch copy otherwise.
            self._discard_image()
        logger.info(f"✓ Image written to {self.output_path}")
        return self.output_path

    def close(self) -> None:
        """Tear down whatever is still live and discard the working image."""
        if self.mount_point is not None:
            self.mount_point.close()
            self.mount_point = None
        self._discard_image()

    def _discard_image(self) -> None:
        if self.image_path is not None and self.image_path.exists():
            try:
                self.image_path.unlink()
            except OSError as e:
                logger.warning(f"Could not remove working image {self.image_path}: {e}")
        self.image_path = None

    def __enter__(self) -> "ImageContext":
        return self.open()

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if exc_type is not None:
            self.close()
        elif self.mount_point is not None:
            self.finish()


def prepare_image(
    output_path: Union[str, Path],
    service_binary: Union[str, Path],
    fetcher: UbuntuImageFetcher,
    serial: Optional[str] = None,
    tempdir: Optional[Union[str, Path]] = None,
) -> Path:
    """
    Build a raw disk image from the Ubuntu base image with ``service_binary`` installed.

    Returns:
        Path to the finished image
    """
    service_binary = Path(service_binary)
    if not service_binary.is_file():
        raise FileNotFoundError(f"Service binary not found: {service_binary}")

    with ImageContext(output_path, fetcher, serial=serial, tempdir=tempdir) as context:
        context.install_service(service_binary)

    return Path(output_path)
