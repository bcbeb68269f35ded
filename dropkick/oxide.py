"""
Oxide publishing

Import a disk image into an Oxide project as an image (and optionally boot an
instance from it) through the Oxide HTTP API.
"""

import base64
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Union

import requests

from dropkick.naming import oxide_image_name, oxide_resource_name
from dropkick.nix import BuildProvenance

logger = logging.getLogger(__name__)

GIB = 1024 * 1024 * 1024
CHUNK_SIZE = 512 * 1024
DISK_BLOCK_SIZE = 512
REQUEST_TIMEOUT = 120

INSTANCE_NCPUS = 4
INSTANCE_MEMORY = 8 * GIB
INSTANCE_DISK_SIZE = 100 * GIB


class OxideError(RuntimeError):
    """Raised when an Oxide API request fails."""


def disk_size(path: Union[str, Path]) -> int:
    """
    Size of a disk that can hold ``path``.

    Oxide only accepts disks that are a whole number of GiB, at least 1 GiB.
    """
    size = os.path.getsize(path)
    if size == 0 or size % GIB:
        size = size - size % GIB + GIB
    return size


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason
    if isinstance(data, dict):
        return data.get("message") or data.get("error_code") or str(data)
    return str(data)


class OxideClient:
    """
    Minimal Oxide API client.

    Args:
        host: Oxide silo URL (defaults to OXIDE_HOST)
        token: API token (defaults to OXIDE_TOKEN)
        session: requests session
    """

    def __init__(
        self,
        host: Optional[str] = None,
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        host = host or os.environ.get("OXIDE_HOST")
        token = token or os.environ.get("OXIDE_TOKEN")
        if not host or not token:
            raise OxideError("OXIDE_HOST and OXIDE_TOKEN must be set")

        self.host = host.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {token}"})

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.host}{path}"
        logger.debug(f"{method} {url}")
        try:
            response = self.session.request(method, url, params=params, json=body, timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as e:
            raise OxideError(f"{method} {path} failed: {e}")

        if response.status_code >= 400:
            raise OxideError(f"{method} {path} failed with HTTP {response.status_code}: {_error_message(response)}")

        if not response.content:
            return {}
        return response.json()

    def list_images(self, project: str) -> Iterator[Dict[str, Any]]:
        """Iterate over every image in ``project``, following pagination."""
        params: Dict[str, Any] = {"project": project}
        while True:
            page = self.request("GET", "/v1/images", params=params)
            yield from page.get("items", [])
            token = page.get("next_page")
            if not token:
                return
            params = {"project": project, "page_token": token}

    def find_image(self, project: str, name: str) -> Optional[str]:
        for image in self.list_images(project):
            if image.get("name") == name:
                return image["id"]
        return None


class OxidePublisher:
    """
    Publish built images to an Oxide project.

    Args:
        project: Oxide project name
        client: API client (built from the environment when omitted)
    """

    def __init__(self, project: str, client: Optional[OxideClient] = None) -> None:
        if not project:
            raise OxideError("Missing oxide project")
        self.project = project
        self.client = client or OxideClient()

    def _disk_path(self, disk: str, action: str) -> str:
        return f"/v1/disks/{disk}/{action}"

    def import_disk(self, image_path: Union[str, Path], disk: str, description: str) -> None:
        """Create ``disk`` and bulk-write the contents of ``image_path`` into it."""
        params = {"project": self.project}
        self.client.request(
            "POST",
            "/v1/disks",
            params=params,
            body={
                "name": disk,
                "description": description,
                "disk_source": {"type": "importing_blocks", "block_size": DISK_BLOCK_SIZE},
                "size": disk_size(image_path),
            },
        )
        self.client.request("POST", self._disk_path(disk, "bulk-write-start"), params=params)

        file_size = os.path.getsize(image_path)
        offset = 0
        next_report = 0
        with open(image_path, "rb") as f:
            while True:
                chunk = f.read(CHUNK_SIZE)
                if not chunk:
                    break
                if chunk.count(0) != len(chunk):
                    self.client.request(
                        "POST",
                        self._disk_path(disk, "bulk-write"),
                        params=params,
                        body={
                            "offset": offset,
                            "base64_encoded_data": base64.b64encode(chunk).decode("ascii"),
                        },
                    )
                offset += CHUNK_SIZE

                if file_size and offset * 100 >= next_report * file_size:
                    logger.info(f"  uploaded {min(offset, file_size) * 100 // file_size}%")
                    next_report += 10

        self.client.request("POST", self._disk_path(disk, "bulk-write-stop"), params=params)

    def publish(
        self,
        image_path: Union[str, Path],
        provenance: BuildProvenance,
        hostname: Optional[str] = None,
        deploy: bool = False,
    ) -> str:
        """
        Publish ``image_path`` as an Oxide image, reusing an existing one for the same build.

        Args:
            image_path: Raw disk image
            provenance: Provenance of the build that produced the image
            hostname: Guest hostname, used when deploying an instance
            deploy: Also create and start an instance from the image

        Returns:
            Image ID, or the instance ID when ``deploy`` is set
        """
        name = oxide_image_name(provenance)
        logger.info(f"Image name: {name}")
        params = {"project": self.project}

        image_id = self.client.find_image(self.project, name)
        if image_id:
            logger.info(f"Image already registered: {image_id}")
        else:
            disk = oxide_resource_name(name, "disk")
            snapshot = oxide_resource_name(name, "snap")

            logger.info("Uploading Oxide disk (this may take several minutes)...")
            self.import_disk(image_path, disk, f"Dropkick {name}")
            self.client.request(
                "POST",
                self._disk_path(disk, "finalize"),
                params=params,
                body={"snapshot_name": snapshot},
            )

            snapshot_info = self.client.request("GET", f"/v1/snapshots/{snapshot}", params=params)
            self.client.request(
                "POST",
                "/v1/images",
                params=params,
                body={
                    "name": name,
                    "description": f"Dropkick {name}",
                    "os": "NixOS",
                    "version": "0.0.0",
                    "source": {"type": "snapshot", "id": snapshot_info["id"]},
                },
            )

            image_id = self.client.find_image(self.project, name)
            if not image_id:
                raise OxideError(f"image {name} not found after creation")
            logger.info(f"✓ Image created: {image_id}")

        if not deploy:
            return image_id

        return self.deploy(name, image_id, hostname or name)

    def deploy(self, name: str, image_id: str, hostname: str) -> str:
        """Create and start an instance booting from ``image_id``."""
        logger.info(f"Creating instance {name}")
        instance = self.client.request(
            "POST",
            "/v1/instances",
            params={"project": self.project},
            body={
                "name": name,
                "description": f"Dropkick {name}",
                "hostname": hostname,
                "memory": INSTANCE_MEMORY,
                "ncpus": INSTANCE_NCPUS,
                "disks": [
                    {
                        "type": "create",
                        "name": oxide_resource_name(name, "instance-disk"),
                        "description": f"Dropkick instance {name}",
                        "size": INSTANCE_DISK_SIZE,
                        "disk_source": {"type": "image", "image_id": image_id},
                    }
                ],
                "external_ips": [{"type": "ephemeral"}],
                "start": True,
            },
        )
        logger.info(f"✓ Instance created: {instance['id']}")
        # TODO: open the firewall for 80/443 or tell the user to; instances start with the default VPC rules
        return instance["id"]
