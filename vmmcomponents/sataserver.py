"""A block server that exposes disjoint partitions of one disk to several
clients, each of which sees a virtual disk holding only its partitions."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .partitions import (
    BLOCK_SIZE,
    ENTRY_SIZE,
    MAX_PARTITIONS,
    PART_OFFSET,
    PartitionEntry,
    lba_to_chs,
    pack_sec_cyl,
    read_partition_table,
)

VIRT_START_SECTOR = 64
"""First sector of the first virtual partition; sectors below it read as zero."""

BUF_SIZE = 4096
"""Largest transfer a client may request at once, in bytes."""

START_SECTOR = 0


class SataStatus(IntEnum):
    GOOD = 0
    NOT_DONE = 1
    INVALID_CONF = 2


class _BlockDevice(Protocol):
    def read_sectors(self, lba: int, count: int) -> bytes: ...

    def write_sectors(self, lba: int, data: bytes) -> None: ...


def _empty_tables() -> List[PartitionEntry]:
    return [PartitionEntry() for _ in range(MAX_PARTITIONS)]


@dataclass
class Client:
    """A client of the server and the virtual disk it sees."""

    client_id: int
    partitions: Tuple[int, ...]
    partition_tables: List[PartitionEntry] = field(default_factory=_empty_tables)
    capacity: int = 0


class SataServer:
    """Serve partitions of ``disk`` to the clients in ``clients``.

    ``clients`` maps each client badge to the 1-based numbers of the
    physical partitions it owns, in the order they appear on its virtual disk.
    """

    def __init__(self, disk: _BlockDevice, clients: Mapping[int, Sequence[int]]) -> None:
        self._disk = disk
        self._config: List[Tuple[int, Tuple[int, ...]]] = [
            (client_id, tuple(parts)) for client_id, parts in clients.items()
        ]
        self._lock = threading.Lock()
        self._assigned = [False] * MAX_PARTITIONS
        self._physical: List[PartitionEntry] = _empty_tables()
        self._boot_sector = bytes(BLOCK_SIZE)
        self.clients: Dict[int, Client] = {}
        self._done = False
        self._invalid = False

    def assign_partition(self, partition: int) -> None:
        """Mark a 1-based partition number as taken.

        Raises ``ValueError`` if the number is out of range or already taken.
        """
        index = partition - 1
        if not 0 <= index < MAX_PARTITIONS:
            raise ValueError(f"partition {partition} does not exist")
        if self._assigned[index]:
            raise ValueError(f"partition {partition} is already assigned")
        self._assigned[index] = True

    def initialise(self) -> None:
        """Read the physical partition table and lay out each client's disk.

        An invalid client configuration is recorded and reported through
        :meth:`get_status`; the server still finishes initialising.
        """
        with self._lock:
            if self._done:
                raise RuntimeError("server is already initialised")
            self._boot_sector = bytes(self._disk.read_sectors(START_SECTOR, 1))[:BLOCK_SIZE].ljust(
                BLOCK_SIZE, b"\0"
            )
            self._physical = read_partition_table(self._boot_sector)
            try:
                self._register_clients()
            except ValueError:
                self._invalid = True
            else:
                for client in self.clients.values():
                    self._lay_out(client)
            self._done = True

    def _register_clients(self) -> None:
        for client_id, parts in self._config:
            self.clients[client_id] = Client(client_id, parts)
            if len(parts) > MAX_PARTITIONS:
                raise ValueError(f"client {client_id} has too many partitions")
            for partition in parts:
                self.assign_partition(partition)

    def _lay_out(self, client: Client) -> None:
        sectors = VIRT_START_SECTOR
        client.partition_tables = _empty_tables()
        for slot, partition in enumerate(client.partitions):
            phys = self._physical[partition - 1]
            start = sectors
            end = start + phys.num_sectors - 1
            cyl, head, sec = lba_to_chs(start)
            end_cyl, end_head, end_sec = lba_to_chs(max(end, 0))
            client.partition_tables[slot] = PartitionEntry(
                boot=phys.boot,
                head=head,
                sec_cyl=pack_sec_cyl(sec, cyl),
                sys_id=phys.sys_id,
                end_head=end_head,
                end_sec_cyl=pack_sec_cyl(end_sec, end_cyl),
                start_lba=start,
                num_sectors=phys.num_sectors,
            )
            sectors += phys.num_sectors
        client.capacity = sectors

    def get_status(self) -> SataStatus:
        if self._invalid:
            return SataStatus.INVALID_CONF
        if not self._done:
            return SataStatus.NOT_DONE
        return SataStatus.GOOD

    def _client(self, client_id: int) -> Client:
        try:
            return self.clients[client_id]
        except KeyError:
            raise KeyError(f"unknown client {client_id}") from None

    def capacity(self, client_id: int) -> int:
        """Size of the client's virtual disk in sectors, or 0 before initialisation."""
        if not self._done:
            return 0
        return self._client(client_id).capacity

    def _check_transfer(self, length: int) -> None:
        if not self._done:
            raise RuntimeError("server is not initialised")
        if not 0 <= length <= BUF_SIZE:
            raise ValueError(f"transfer of {length} bytes exceeds {BUF_SIZE}")

    def _physical_offset(self, client: Client, sector: int) -> int:
        for partition, table in zip(client.partitions, client.partition_tables):
            start = table.start_lba
            if start <= sector < start + table.num_sectors:
                return self._physical[partition - 1].start_lba - start
        raise ValueError(f"sector {sector} lies outside every partition of client {client.client_id}")

    def _virtual_boot_sector(self, client: Client) -> bytes:
        block = bytearray(self._boot_sector)
        table = b"".join(entry.to_bytes() for entry in client.partition_tables)
        block[PART_OFFSET:PART_OFFSET + MAX_PARTITIONS * ENTRY_SIZE] = table
        return bytes(block)

    def read(self, client_id: int, sector: int, length: int) -> bytes:
        """Read ``length`` bytes from the client's virtual disk at ``sector``."""
        self._check_transfer(length)
        with self._lock:
            client = self._client(client_id)
            if sector == START_SECTOR:
                return self._virtual_boot_sector(client)[:length].ljust(length, b"\0")
            if sector < VIRT_START_SECTOR:
                return bytes(length)
            offset = self._physical_offset(client, sector)
            return bytes(self._disk.read_sectors(sector + offset, length // BLOCK_SIZE))

    def write(self, client_id: int, sector: int, data: bytes) -> int:
        """Write ``data`` to the client's virtual disk at ``sector``.

        Writes below the first virtual partition are silently discarded.
        Returns the number of bytes accepted.
        """
        self._check_transfer(len(data))
        with self._lock:
            client = self._client(client_id)
            if sector >= VIRT_START_SECTOR:
                offset = self._physical_offset(client, sector)
                whole = len(data) // BLOCK_SIZE * BLOCK_SIZE
                self._disk.write_sectors(sector + offset, bytes(data[:whole]))
            return len(data)

    def lookup(self, client_id: int) -> Optional[Client]:
        """Return the client record for ``client_id`` if it is registered."""
        return self.clients.get(client_id)