"""
EC2 publishing

Upload a disk image as an EBS snapshot, register an AMI from it, and
optionally roll a CloudFormation stack onto the new AMI.
"""

import base64
import logging
import math
import os
from pathlib import Path
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import boto3
from botocore.exceptions import ClientError, WaiterError
from cryptography.hazmat.primitives import hashes

from dropkick.naming import image_name, provenance_tags
from dropkick.nix import BuildProvenance

logger = logging.getLogger(__name__)

GIB = 1024 * 1024 * 1024
MIN_ROOT_VOLUME_GIB = 2
ROOT_DEVICE = "/dev/xvda"

SNAPSHOT_WAIT_DELAY = 15
SNAPSHOT_WAIT_ATTEMPTS = 240

STACK_IMAGE_PARAMETER = "DropkickImageId"
STACK_POLL_INTERVAL = 15
STACK_POLL_ATTEMPTS = 60
STACK_SUCCESS_STATUS = "UPDATE_COMPLETE"
STACK_FAILURE_STATUSES = ("UPDATE_FAILED", "UPDATE_ROLLBACK_FAILED", "UPDATE_ROLLBACK_COMPLETE")


class SnapshotError(RuntimeError):
    """Raised when a snapshot upload fails or never completes."""


class StackUpdateError(RuntimeError):
    """Raised when a stack update ends in a failure state."""


class StackUpdateTimeout(StackUpdateError):
    """Raised when a stack update does not finish within the polling limit."""


def _tag_list(tags: Iterable[Tuple[str, str]]) -> List[Dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in tags]


def _checksum(data: bytes) -> str:
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return base64.b64encode(digest.finalize()).decode("ascii")


def find_image(ec2_client: Any, name: str) -> Optional[str]:
    """
    Look up an AMI owned by this account with exactly ``name``.

    Returns:
        Image ID, or None if no such image exists
    """
    response = ec2_client.describe_images(
        Owners=["self"],
        Filters=[{"Name": "name", "Values": [name]}],
    )
    for image in response.get("Images", []):
        if image.get("Name", name) == name and image.get("ImageId"):
            return image["ImageId"]
    return None


def upload_snapshot(
    ebs_client: Any,
    path: Union[str, Path],
    description: str,
    tags: Iterable[Tuple[str, str]] = (),
    upload_zero_blocks: bool = True,
) -> str:
    """
    Upload a disk image to a new EBS snapshot with the EBS direct APIs.

    Args:
        ebs_client: Boto3 EBS client
        path: Raw disk image
        description: Snapshot description
        tags: Tags to attach to the snapshot
        upload_zero_blocks: Also upload blocks that are entirely zero

    Returns:
        Snapshot ID string
    """
    path = Path(path)
    file_size = os.path.getsize(path)
    volume_size = max(1, math.ceil(file_size / GIB))

    response = ebs_client.start_snapshot(
        VolumeSize=volume_size,
        Description=description,
        Tags=_tag_list(tags),
    )
    snapshot_id = response["SnapshotId"]
    block_size = response.get("BlockSize", 512 * 1024)
    logger.info(f"Started snapshot {snapshot_id} ({volume_size} GiB, block size {block_size})")

    block_count = math.ceil(file_size / block_size)
    changed = 0
    next_report = 0
    zero_block = bytes(block_size)

    try:
        with open(path, "rb") as f:
            for index in range(block_count):
                data = f.read(block_size)
                if len(data) < block_size:
                    data = data + bytes(block_size - len(data))
                if not upload_zero_blocks and data == zero_block:
                    continue

                ebs_client.put_snapshot_block(
                    SnapshotId=snapshot_id,
                    BlockIndex=index,
                    BlockData=data,
                    DataLength=block_size,
                    Checksum=_checksum(data),
                    ChecksumAlgorithm="SHA256",
                )
                changed += 1

                if index * 100 >= next_report * block_count:
                    logger.info(f"  uploaded {index * 100 // block_count}% ({index}/{block_count} blocks)")
                    next_report += 10

        ebs_client.complete_snapshot(SnapshotId=snapshot_id, ChangedBlocksCount=changed)
    except ClientError as e:
        logger.error(f"Snapshot upload failed: {e}")
        raise SnapshotError(f"failed to upload snapshot {snapshot_id}: {e}")

    logger.info(f"✓ Uploaded {changed} blocks to snapshot {snapshot_id}")
    return snapshot_id


def wait_for_snapshot(
    ec2_client: Any,
    snapshot_id: str,
    delay: int = SNAPSHOT_WAIT_DELAY,
    max_attempts: int = SNAPSHOT_WAIT_ATTEMPTS,
) -> None:
    """
    Wait for a snapshot to reach the completed state.

    Raises:
        SnapshotError: If the snapshot errors out or does not complete in time
    """
    logger.info(f"Waiting for snapshot {snapshot_id} to complete...")
    try:
        waiter = ec2_client.get_waiter("snapshot_completed")
        waiter.wait(
            SnapshotIds=[snapshot_id],
            WaiterConfig={"Delay": delay, "MaxAttempts": max_attempts},
        )
    except WaiterError as e:
        logger.error(f"Snapshot failed to complete: {e}")
        raise SnapshotError(f"failed to wait for snapshot {snapshot_id}: {e}")
    logger.info("✓ Snapshot completed successfully")


def register_image(
    ec2_client: Any,
    snapshot_id: str,
    name: str,
    volume_size: int = MIN_ROOT_VOLUME_GIB,
    architecture: str = "x86_64",
) -> str:
    """
    Register an AMI booting from ``snapshot_id``.

    Args:
        ec2_client: Boto3 EC2 client
        snapshot_id: Completed EBS snapshot ID
        name: Name for the AMI
        volume_size: Root volume size in GiB
        architecture: CPU architecture

    Returns:
        AMI ID string
    """
    logger.info("Registering AMI with UEFI boot mode...")
    logger.info(f"  Snapshot: {snapshot_id}")
    logger.info(f"  Name: {name}")

    try:
        response = ec2_client.register_image(
            Name=name,
            VirtualizationType="hvm",
            Architecture=architecture,
            BootMode="uefi",
            RootDeviceName=ROOT_DEVICE,
            BlockDeviceMappings=[
                {
                    "DeviceName": ROOT_DEVICE,
                    "Ebs": {
                        "SnapshotId": snapshot_id,
                        "VolumeSize": max(MIN_ROOT_VOLUME_GIB, volume_size),
                        "VolumeType": "gp3",
                        "DeleteOnTermination": True,
                    },
                }
            ],
            EnaSupport=True,
            SriovNetSupport="simple",
            ImdsSupport="v2.0",
        )
    except ClientError as e:
        logger.error(f"Failed to register AMI: {e}")
        raise

    image_id = response.get("ImageId")
    if not image_id:
        raise RuntimeError("no image ID in ec2:RegisterImage response")

    logger.info(f"✓ AMI registered successfully: {image_id}")
    return image_id


def stack_status(cloudformation_client: Any, stack_name: str) -> str:
    response = cloudformation_client.describe_stacks(StackName=stack_name)
    stacks = response.get("Stacks", [])
    if not stacks:
        raise StackUpdateError(f"stack {stack_name} not found")
    return stacks[0]["StackStatus"]


def wait_for_stack_update(
    cloudformation_client: Any,
    stack_name: str,
    interval: float = STACK_POLL_INTERVAL,
    max_attempts: int = STACK_POLL_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """
    Poll a stack until its update finishes.

    UPDATE_COMPLETE is success. UPDATE_FAILED, UPDATE_ROLLBACK_FAILED and
    UPDATE_ROLLBACK_COMPLETE fail immediately. Any other status, including
    unfamiliar ones, keeps the poll going until ``max_attempts`` is used up.

    Returns:
        The final (successful) stack status

    Raises:
        StackUpdateError: If the stack reaches a failure status
        StackUpdateTimeout: If the attempt ceiling is reached
    """
    for attempt in range(1, max_attempts + 1):
        status = stack_status(cloudformation_client, stack_name)
        logger.info(f"Stack {stack_name} status: {status} (attempt {attempt}/{max_attempts})")

        if status == STACK_SUCCESS_STATUS:
            logger.info(f"✓ Stack {stack_name} updated successfully")
            return status
        if status in STACK_FAILURE_STATUSES:
            raise StackUpdateError(f"stack {stack_name} update failed with status {status}")

        if attempt < max_attempts:
            sleep(interval)

    raise StackUpdateTimeout(
        f"stack {stack_name} did not finish updating after {max_attempts} attempts"
    )


def update_stack(
    cloudformation_client: Any,
    stack_name: str,
    image_id: str,
    parameter: str = STACK_IMAGE_PARAMETER,
    interval: float = STACK_POLL_INTERVAL,
    max_attempts: int = STACK_POLL_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """
    Update a stack's image parameter in place and wait for the rollout.

    The stack keeps its current template; only ``parameter`` changes.

    Returns:
        The final stack status
    """
    logger.info(f"Updating stack {stack_name} to image {image_id}")
    try:
        cloudformation_client.update_stack(
            StackName=stack_name,
            UsePreviousTemplate=True,
            Parameters=[{"ParameterKey": parameter, "ParameterValue": image_id}],
            Capabilities=["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"],
        )
    except ClientError as e:
        message = e.response.get("Error", {}).get("Message", "")
        if "No updates are to be performed" in message:
            logger.info(f"Stack {stack_name} already uses image {image_id}")
            return stack_status(cloudformation_client, stack_name)
        logger.error(f"Failed to update stack: {e}")
        raise

    return wait_for_stack_update(
        cloudformation_client,
        stack_name,
        interval=interval,
        max_attempts=max_attempts,
        sleep=sleep,
    )


class Ec2Publisher:
    """
    Publish built images as AMIs.

    Args:
        region: AWS region (boto3's default resolution when omitted)
        session: Boto3 session to create clients from
        ec2_client: EC2 client override
        ebs_client: EBS client override
        cloudformation_client: CloudFormation client override
        upload_zero_blocks: Upload all-zero blocks to the snapshot too
        sleep: Sleep function used between stack polls
    """

    def __init__(
        self,
        region: Optional[str] = None,
        session: Optional[boto3.session.Session] = None,
        ec2_client: Any = None,
        ebs_client: Any = None,
        cloudformation_client: Any = None,
        upload_zero_blocks: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session
        self.region = region
        self._ec2 = ec2_client
        self._ebs = ebs_client
        self._cloudformation = cloudformation_client
        self.upload_zero_blocks = upload_zero_blocks
        self.sleep = sleep

    @property
    def session(self) -> boto3.session.Session:
        if self._session is None:
            self._session = boto3.session.Session(region_name=self.region)
        return self._session

    @property
    def ec2(self) -> Any:
        if self._ec2 is None:
            self._ec2 = self.session.client("ec2")
        return self._ec2

    @property
    def ebs(self) -> Any:
        if self._ebs is None:
            self._ebs = self.session.client("ebs")
        return self._ebs

    @property
    def cloudformation(self) -> Any:
        if self._cloudformation is None:
            self._cloudformation = self.session.client("cloudformation")
        return self._cloudformation

    def publish(
        self,
        image_path: Union[str, Path],
        provenance: BuildProvenance,
        stack: Optional[str] = None,
    ) -> str:
        """
        Publish ``image_path`` as an AMI, reusing an existing AMI for the same build.

        Args:
            image_path: Raw disk image
            provenance: Provenance of the build that produced the image
            stack: CloudFormation stack to roll onto the image

        Returns:
            AMI ID string
        """
        name = image_name(provenance)
        logger.info(f"Image name: {name}")

        image_id = find_image(self.ec2, name)
        if image_id:
            logger.info(f"Image already registered: {image_id}")
        else:
            tags = provenance_tags(provenance)
            logger.info("Uploading EC2 snapshot (this may take several minutes)...")
            snapshot_id = upload_snapshot(
                self.ebs,
                image_path,
                description=name,
                tags=tags,
                upload_zero_blocks=self.upload_zero_blocks,
            )
            wait_for_snapshot(self.ec2, snapshot_id)

            volume_size = math.ceil(os.path.getsize(image_path) / GIB)
            image_id = register_image(self.ec2, snapshot_id, name, volume_size=volume_size)
            self.ec2.create_tags(Resources=[image_id], Tags=_tag_list(tags))

        if stack:
            update_stack(self.cloudformation, stack, image_id, sleep=self.sleep)

        return image_id
