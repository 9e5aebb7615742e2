"""MBR partition table entries and the CHS arithmetic used to fill them in."""

from __future__ import annotations

import struct
from dataclasses import astuple, dataclass
from typing import List, Tuple

BLOCK_SIZE = 512
"""Size of one disk sector, in bytes."""

PART_OFFSET = 446
"""Byte offset of the partition table inside the master boot record."""

ENTRY_SIZE = 16
MAX_PARTITIONS = 4

MAX_NUM_CYL = 1023
MAX_NUM_HEAD = 255
MAX_NUM_SECT = 63

_ENTRY = struct.Struct("<BBHBBHII")


@dataclass
class PartitionEntry:
    """One 16-byte primary partition entry of a master boot record."""

    boot: int = 0
    head: int = 0
    sec_cyl: int = 0
    sys_id: int = 0
    end_head: int = 0
    end_sec_cyl: int = 0
    start_lba: int = 0
    num_sectors: int = 0

    def to_bytes(self) -> bytes:
        """Encode the entry in its on-disk little-endian layout."""
        try:
            return _ENTRY.pack(*astuple(self))
        except struct.error as exc:
            raise ValueError(f"partition entry field out of range: {exc}") from exc

    @classmethod
    def from_bytes(cls, data: bytes) -> "PartitionEntry":
        """Decode an entry from exactly 16 bytes."""
        if len(data) != ENTRY_SIZE:
            raise ValueError(f"a partition entry is {ENTRY_SIZE} bytes, got {len(data)}")
        return cls(*_ENTRY.unpack(bytes(data)))


def lba_to_chs(lba: int) -> Tuple[int, int, int]:
    """Convert a logical block address to ``(cylinder, head, sector)``.

    Addresses beyond the reach of CHS addressing saturate to the maximum
    geometry, as the MBR convention requires.
    """
    if lba < 0:
        raise ValueError("logical block address must not be negative")
    if lba // (MAX_NUM_HEAD * MAX_NUM_SECT) > MAX_NUM_CYL:
        return MAX_NUM_CYL, MAX_NUM_HEAD, MAX_NUM_SECT
    cyl = lba // (MAX_NUM_HEAD * MAX_NUM_SECT)
    head = (lba // MAX_NUM_SECT) % MAX_NUM_HEAD
    sec = lba % MAX_NUM_SECT + 1
    return cyl, head, sec


def pack_sec_cyl(sec: int, cyl: int) -> int:
    """Pack a 6-bit sector and a 10-bit cylinder into the MBR's 16-bit field.

    The upper two cylinder bits sit in the top of the sector byte; the low
    eight cylinder bits form the second byte.
    """
    return (sec | ((cyl & 0x0300) >> 2) | ((cyl & 0x00FF) << 8)) & 0xFFFF


def read_partition_table(block: bytes) -> List[PartitionEntry]:
    """Parse the four primary partition entries of a boot sector."""
    end = PART_OFFSET + MAX_PARTITIONS * ENTRY_SIZE
    if len(block) < end:
        raise ValueError(f"boot sector too short: {len(block)} bytes, need {end}")
    return [
        PartitionEntry.from_bytes(block[start:start + ENTRY_SIZE])
        for start in range(PART_OFFSET, end, ENTRY_SIZE)
    ]