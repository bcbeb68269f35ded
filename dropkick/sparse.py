"""
Sparse file copy

Copy a stream into a file, turning runs of zero blocks into holes.
"""

import os
from typing import BinaryIO

BLOCK_SIZE = 4096


def sparse_copy(source: BinaryIO, destination: BinaryIO, block_size: int = BLOCK_SIZE) -> int:
    """
    Copy ``source`` into ``destination`` starting at its current position.

    All-zero blocks are skipped by seeking forward instead of writing, so the
    filesystem can leave them unallocated. The destination is truncated to
    the final position afterwards; seeking past end-of-file does not extend
    the file by itself when the stream ends in zeros.

    Args:
        source: Readable binary stream
        destination: Seekable, writable binary file
        block_size: Read size in bytes

    Returns:
        Number of bytes consumed from the source
    """
    zero_block = bytes(block_size)
    pending_seek = 0
    copied = 0

    while True:
        block = source.read(block_size)
        if not block:
            break
        copied += len(block)

        if block == zero_block[: len(block)]:
            pending_seek += len(block)
            continue

        if pending_seek:
            destination.seek(pending_seek, os.SEEK_CUR)
            pending_seek = 0
        destination.write(block)

    if pending_seek:
        destination.seek(pending_seek, os.SEEK_CUR)

    destination.truncate(destination.tell())
    return copied
