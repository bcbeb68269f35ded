"""
Mount points

Mount the main partition of a PartitionMap at a fresh temporary directory.
A MountPoint owns its PartitionMap: tearing it down unmounts first and
unmaps second.
"""

import logging
import os
from pathlib import Path
import tempfile
from types import TracebackType
from typing import Optional, Type, Union

from dropkick import command
from dropkick.kpartx import PartitionMap

logger = logging.getLogger(__name__)


class MountPoint:
    """
    A mounted filesystem backed by a PartitionMap.

    Teardown order is always unmount, then unmap. ``unmount`` hands the
    still-mapped PartitionMap back to the caller; ``release`` does both
    steps and raises on failure; ``close`` does both steps and only logs.
    """

    def __init__(self, path: Union[str, Path], partition_map: PartitionMap) -> None:
        self.path = Path(path)
        self.partition_map = partition_map
        self._mounted = True

    @classmethod
    def create(
        cls,
        partition_map: PartitionMap,
        tempdir_in: Optional[Union[str, Path]] = None,
    ) -> "MountPoint":
        """
        Mount the main partition of ``partition_map``.

        Ownership of ``partition_map`` moves to the new MountPoint; if
        mounting fails, the map is released before the error propagates.

        Args:
            partition_map: Mapped partitions of the disk image
            tempdir_in: Parent directory for the mount directory

        Returns:
            MountPoint for the mounted filesystem
        """
        try:
            path = Path(tempfile.mkdtemp(prefix="dropkick-mount-", dir=tempdir_in))
        except BaseException:
            partition_map.close()
            raise

        try:
            command.run(["mount", partition_map.main_partition(), path], sudo=True)
        except BaseException:
            _remove_dir(path)
            partition_map.close()
            raise

        logger.info(f"Mounted {partition_map.main_partition()} at {path}")
        return cls(path, partition_map)

    @property
    def is_mounted(self) -> bool:
        return self._mounted

    def unmount(self) -> PartitionMap:
        """
        Unmount the filesystem and return the still-mapped PartitionMap.

        Raises:
            CommandError: If umount fails
        """
        if self._mounted:
            command.run(["umount", self.path], sudo=True)
            self._mounted = False
            _remove_dir(self.path)
        return self.partition_map

    def release(self) -> Path:
        """
        Unmount and unmap.

        Returns:
            The backing file of the partition map
        """
        return self.unmount().release()

    def close(self) -> None:
        """Unmount and unmap whatever is still live, logging failures."""
        if self._mounted:
            try:
                self.unmount()
            except Exception as e:
                logger.error(f"Cleanup failed: could not unmount {self.path}: {e}")
        self.partition_map.close()

    def __enter__(self) -> "MountPoint":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if exc_type is None:
            self.release()
        else:
            self.close()

    def __repr__(self) -> str:
        return f"MountPoint(path={str(self.path)!r}, partition_map={self.partition_map!r})"


def _remove_dir(path: Path) -> None:
    try:
        os.rmdir(path)
    except OSError as e:
        logger.warning(f"Could not remove mount directory {path}: {e}")
