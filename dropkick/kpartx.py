"""
Partition device mapping

Map the partitions of a raw disk image to /dev/mapper devices with kpartx,
and guarantee they are unmapped again.
"""

import logging
from pathlib import Path
from types import TracebackType
from typing import List, Optional, Type, Union

from dropkick import command

logger = logging.getLogger(__name__)

ADD_MAP_MARKER = "add map "
MAPPER_DIR = Path("/dev/mapper")


class NoPartitionsError(RuntimeError):
    """Raised when kpartx finds no partitions in the backing file."""


def parse_partitions(output: str) -> List[str]:
    """
    Parse ``kpartx -av`` output into partition device names.

    Example line: ``add map loop0p1 (253:0): 0 4384735 linear 7:0 227328``

    Args:
        output: kpartx stdout

    Returns:
        Device names in the order kpartx reported them
    """
    partitions = []
    for line in output.splitlines():
        if not line.startswith(ADD_MAP_MARKER):
            continue
        fields = line[len(ADD_MAP_MARKER):].split()
        if fields:
            partitions.append(fields[0])
    return partitions


class PartitionMap:
    """
    Partition devices mapped from a backing file.

    Use ``PartitionMap.create`` (or the context manager protocol) rather than
    constructing one directly. ``release`` tears the mapping down and raises
    on failure; leaving a ``with`` block because of an exception tears it
    down too, logging any cleanup failure instead of raising it.
    """

    def __init__(self, backing_file: Union[str, Path], partitions: Optional[List[str]] = None) -> None:
        self.backing_file = Path(backing_file)
        self.partitions: List[str] = list(partitions or [])
        self._mapped = True

    @classmethod
    def create(cls, backing_file: Union[str, Path]) -> "PartitionMap":
        """
        Map the partitions of ``backing_file``.

        Raises:
            NoPartitionsError: If kpartx reports no partitions
            CommandError: If kpartx fails
        """
        result = command.run(["kpartx", "-avs", backing_file], sudo=True, capture=True)

        # from here on kpartx may have set up mappings, so any failure must clean up
        partition_map = cls(backing_file)
        try:
            partition_map.partitions = parse_partitions(result.stdout or "")
            if not partition_map.partitions:
                raise NoPartitionsError(f"no partitions detected from kpartx output for {backing_file}")
        except BaseException:
            partition_map.close()
            raise

        logger.info(f"Mapped partitions of {backing_file}: {', '.join(partition_map.partitions)}")
        return partition_map

    @property
    def is_mapped(self) -> bool:
        return self._mapped

    def main_partition(self) -> Path:
        """Device path of the first mapped partition."""
        return MAPPER_DIR / self.partitions[0]

    def release(self) -> Path:
        """
        Unmap the partition devices.

        Returns:
            The backing file, now free to be reused or moved

        Raises:
            CommandError: If ``kpartx -d`` fails (the map stays armed for a later attempt)
        """
        if self._mapped:
            command.run(["kpartx", "-d", self.backing_file], sudo=True)
            self._mapped = False
        return self.backing_file

    def close(self) -> None:
        """Unmap if still mapped, logging instead of raising on failure."""
        if not self._mapped:
            return
        try:
            self.release()
        except Exception as e:
            logger.error(f"Cleanup failed: could not unmap partitions of {self.backing_file}: {e}")

    def __enter__(self) -> "PartitionMap":
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
        return f"PartitionMap(backing_file={str(self.backing_file)!r}, partitions={self.partitions!r})"
