"""Guest-facing virtio block device backed by a partition server.

The backend moves sector data between guest buffers and a shared dataport
that the block server reads from and writes into.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import MutableSequence, Protocol

from .sataserver import SataStatus

VIRTIO_VENDOR_ID = 0x1AF4
VIRTIO_DEVICE_ID = 0x1001

VIRTIO_BLK_IOBASE = 0x8000
VIRTIO_IOPORT_SIZE = 0x40
VIRTIO_QUEUE_SIZE = 128
VIRTIO_BLK_DISK_BLK_SIZE = 512
VIRTIO_BLK_IRQ = 7
VIRTIO_BLK_SIZE_MAX = 4096
VIRTIO_BLK_SEG_MAX = 1


class BlkRequest(IntEnum):
    """Virtio block request types."""

    IN = 0
    OUT = 1
    SCSI_CMD = 2
    FLUSH = 4
    GET_ID = 8


class XferResult(IntEnum):
    """Outcome of one block transfer."""

    COMPLETE = 0
    FAILED = 1


@dataclass(frozen=True)
class BlkConfig:
    """Device configuration space presented to the guest."""

    capacity: int
    seg_max: int = VIRTIO_BLK_SEG_MAX
    size_max: int = VIRTIO_BLK_SIZE_MAX
    blk_size: int = VIRTIO_BLK_DISK_BLK_SIZE


class _BlockServer(Protocol):
    """The server side of the block interface.

    ``rx`` fills ``dataport`` from the disk and ``tx`` writes ``dataport`` to
    the disk; both return the number of bytes moved, 0 on failure.
    """

    dataport: MutableSequence[int]

    def get_status(self) -> int: ...

    def get_capacity(self) -> int: ...

    def rx(self, sector: int, length: int) -> int: ...

    def tx(self, sector: int, length: int) -> int: ...


class VirtioBlkBackend:
    """Connects the emulated virtio block device to a block server."""

    def __init__(self, server: _BlockServer) -> None:
        self.server = server

    def wait_ready(self) -> None:
        """Block until the server has finished initialising.

        Raises ``RuntimeError`` if the server reports an invalid partition
        configuration.
        """
        status = self.server.get_status()
        while status == SataStatus.NOT_DONE:
            status = self.server.get_status()
        if status == SataStatus.INVALID_CONF:
            raise RuntimeError("Invalid partition configuration")

    def init_config(self) -> BlkConfig:
        """Build the device configuration from the server's capacity."""
        return BlkConfig(capacity=self.server.get_capacity())

    def transfer(
        self,
        direction: int,
        sector: int,
        length: int,
        buffer: MutableSequence[int],
    ) -> XferResult:
        """Carry out one request between ``buffer`` and the disk.

        Requests that move no data (SCSI commands, flushes, identify) do
        nothing and report :attr:`XferResult.FAILED`, as does any transfer
        the server did not carry out.
        """
        try:
            request = BlkRequest(direction)
        except ValueError:
            raise ValueError(f"virtio_blk: Invalid command ({direction})") from None
        if length < 0:
            raise ValueError("transfer length must not be negative")

        status = 0
        dataport = self.server.dataport
        if request is BlkRequest.IN:
            status = self.server.rx(sector, length)
            buffer[:length] = bytes(dataport[:length])
        elif request is BlkRequest.OUT:
            dataport[:length] = bytes(buffer[:length])
            status = self.server.tx(sector, length)
        return XferResult.COMPLETE if status != 0 else XferResult.FAILED