"""Sixteen-byte FIFO used by the 16550A UART for its receive and transmit paths."""

from __future__ import annotations

FIFO_LENGTH = 16
"""Depth of a 16550A FIFO, in bytes."""


class SerialFifo:
    """A fixed-size ring of bytes with the overrun rules of a 16550A FIFO.

    ``itl`` is the receive interrupt trigger level, in bytes.
    """

    def __init__(self, itl: int = 0) -> None:
        self.itl = itl
        self._data = bytearray(FIFO_LENGTH)
        self._count = 0
        self._head = 0
        self._tail = 0

    def clear(self) -> None:
        """Drop all contents and rewind the ring."""
        self._data[:] = bytes(FIFO_LENGTH)
        self._count = 0
        self._head = 0
        self._tail = 0

    def put(self, value: int, overwrite: bool) -> bool:
        """Store one byte.

        When the FIFO is full a byte is stored only if ``overwrite`` is set
        (the transmit FIFO); a receive FIFO keeps its contents. Returns
        ``False`` when the FIFO was already full, which for a receive FIFO is
        an overrun, and ``True`` otherwise.
        """
        full = self._count >= FIFO_LENGTH
        if overwrite or not full:
            self._data[self._head] = value & 0xFF
            self._head = (self._head + 1) % FIFO_LENGTH
        if full:
            return False
        self._count += 1
        return True

    def get(self) -> int:
        """Remove and return the oldest byte, or 0 when the FIFO is empty."""
        if self._count == 0:
            return 0
        value = self._data[self._tail]
        self._tail = (self._tail + 1) % FIFO_LENGTH
        self._count -= 1
        return value

    def __len__(self) -> int:
        return self._count

    def __repr__(self) -> str:
        return f"SerialFifo(count={self._count}, itl={self.itl})"