"""Emulation of a 16550A UART as seen by a guest through I/O ports."""

from __future__ import annotations

import time
from enum import IntFlag
from typing import Callable, Dict, Optional

from .fifo import FIFO_LENGTH, SerialFifo

LCR_DLAB = 0x80

IER_MSI = 0x08
IER_RLSI = 0x04
IER_THRI = 0x02
IER_RDI = 0x01

IIR_NO_INT = 0x01
IIR_ID = 0x06
IIR_MSI = 0x00
IIR_THRI = 0x02
IIR_RDI = 0x04
IIR_RLSI = 0x06
IIR_CTI = 0x0C
IIR_FE = 0xC0

MCR_LOOP = 0x10
MCR_OUT2 = 0x08
MCR_OUT1 = 0x04
MCR_RTS = 0x02
MCR_DTR = 0x01

MSR_DCD = 0x80
MSR_RI = 0x40
MSR_DSR = 0x20
MSR_CTS = 0x10
MSR_TERI = 0x04
MSR_ANY_DELTA = 0x0F

LSR_TEMT = 0x40
LSR_THRE = 0x20
LSR_BI = 0x10
LSR_FE = 0x08
LSR_PE = 0x04
LSR_OE = 0x02
LSR_DR = 0x01
LSR_INT_ANY = 0x1E

FCR_ITL_1 = 0x00
FCR_ITL_2 = 0x40
FCR_ITL_3 = 0x80
FCR_ITL_4 = 0xC0
FCR_XFR = 0x04
FCR_RFR = 0x02
FCR_FE = 0x01

MAX_XMIT_RETRY = 4
MAX_CHARS_PER_TICK = 16
NS_PER_SECOND = 1_000_000_000
NS_PER_MS = 1_000_000
MORE_CHARS_DELAY_NS = 3 * NS_PER_MS
CHAR_RING_SIZE = 4096 - 8

_TRIGGER_LEVELS = {FCR_ITL_1: 1, FCR_ITL_2: 4, FCR_ITL_3: 8, FCR_ITL_4: 14}


class Timer(IntFlag):
    """One-shot timers the UART arms; members double as completion bits."""

    FIFO_TIMEOUT = 1
    TRANSMIT = 2
    MODEM_STATUS = 4
    MORE_CHARS = 8


class CharRing:
    """Single-producer ring of input characters waiting for the UART."""

    def __init__(self, size: int = CHAR_RING_SIZE) -> None:
        if size < 2:
            raise ValueError("ring size must be at least 2")
        self._buf = bytearray(size)
        self._head = 0
        self._tail = 0

    def enqueue(self, data: bytes) -> int:
        """Append bytes until the ring is full; return how many were stored."""
        stored = 0
        size = len(self._buf)
        for value in data:
            nxt = (self._tail + 1) % size
            if nxt == self._head:
                break
            self._buf[self._tail] = value
            self._tail = nxt
            stored += 1
        return stored

    def dequeue(self) -> Optional[int]:
        """Remove and return the oldest byte, or ``None`` when empty."""
        if self._head == self._tail:
            return None
        value = self._buf[self._head]
        self._head = (self._head + 1) % len(self._buf)
        return value

    def __len__(self) -> int:
        return (self._tail - self._head) % len(self._buf)


class Uart16550:
    """A 16550A UART whose output goes to ``putchar`` and whose interrupt
    line is reported through ``set_irq``.

    Armed one-shot timers are kept in ``timers`` as absolute deadlines in
    nanoseconds; the host fires them through :meth:`timer_interrupt`.
    """

    def __init__(
        self,
        *,
        baudbase: int = 115200,
        putchar: Optional[Callable[[int], None]] = None,
        set_irq: Optional[Callable[[bool], None]] = None,
        clock: Optional[Callable[[], int]] = None,
        input_ring: Optional[CharRing] = None,
    ) -> None:
        self._putchar = putchar
        self._set_irq = set_irq
        self._clock = clock or time.monotonic_ns
        self.input_ring = input_ring if input_ring is not None else CharRing()
        self.timers: Dict[Timer, int] = {}
        self.baudbase = baudbase
        self.recv_fifo = SerialFifo()
        self.xmit_fifo = SerialFifo()
        self.fcr = 0
        self.thr = 0
        self.tsr = 0
        self.timeout_ipending = False
        self.chars_sent = 0
        self.reset()
        self.update_modem_status()

    # -- timers -----------------------------------------------------------

    def _arm(self, timer: Timer, deadline: int) -> None:
        self.timers[timer] = deadline

    def _cancel(self, timer: Timer) -> None:
        self.timers.pop(timer, None)

    # -- core state -------------------------------------------------------

    def reset(self) -> None:
        """Return the registers to their power-on values."""
        self.rbr = 0
        self.ier = 0
        self.iir = IIR_NO_INT
        self.lcr = 0
        self.lsr = LSR_TEMT | LSR_THRE
        self.msr = MSR_DCD | MSR_DSR | MSR_CTS
        # 9600 baud, 8 data bits, 1 stop bit, no parity.
        self.divider = 0x0C
        self.mcr = MCR_OUT2
        self.scr = 0
        self.tsr_retry = 0
        self.char_transmit_time = (NS_PER_SECOND // 9600) * 10
        self.poll_msl = 0
        self.recv_fifo.clear()
        self.xmit_fifo.clear()
        self.last_xmit_ts = self._clock()
        self.thr_ipending = False
        self.last_break_enable = 0
        self.irq_level = False

    def _update_irq(self) -> None:
        pending = IIR_NO_INT
        if self.ier & IER_RLSI and self.lsr & LSR_INT_ANY:
            pending = IIR_RLSI
        elif self.ier & IER_RDI and self.timeout_ipending:
            pending = IIR_CTI
        elif (
            self.ier & IER_RDI
            and self.lsr & LSR_DR
            and (not self.fcr & FCR_FE or len(self.recv_fifo) >= self.recv_fifo.itl)
        ):
            pending = IIR_RDI
        elif self.ier & IER_THRI and self.thr_ipending:
            pending = IIR_THRI
        elif self.ier & IER_MSI and self.msr & MSR_ANY_DELTA:
            pending = IIR_MSI
        self.iir = pending | (self.iir & 0xF0)
        self.irq_level = pending != IIR_NO_INT
        if self._set_irq is not None:
            self._set_irq(self.irq_level)

    def _update_parameters(self) -> None:
        if self.divider == 0:
            return
        frame_size = 1
        if self.lcr & 0x08:
            frame_size += 1
        stop_bits = 2 if self.lcr & 0x04 else 1
        data_bits = (self.lcr & 0x03) + 5
        frame_size += data_bits + stop_bits
        speed = self.baudbase // self.divider
        if speed <= 0:
            raise ValueError(f"baud base {self.baudbase} too low for divider {self.divider}")
        self.char_transmit_time = (NS_PER_SECOND // speed) * frame_size

    def update_modem_status(self) -> None:
        """Refresh the modem status lines, raising delta bits on change."""
        old = self.msr
        self.msr |= MSR_CTS | MSR_DCD
        if self.msr != old:
            self.msr |= ((self.msr >> 4) ^ (old >> 4)) & 0x0F
            if self.msr & MSR_TERI and not old & MSR_RI:
                self.msr &= ~MSR_TERI & 0xFF
            self._update_irq()

    def transmit(self) -> None:
        """Move the next byte through the shift register to the output."""
        now = self._clock()
        if self.tsr_retry <= 0:
            if self.fcr & FCR_FE:
                self.tsr = self.xmit_fifo.get()
                if not len(self.xmit_fifo):
                    self.lsr |= LSR_THRE
            else:
                self.tsr = self.thr
                self.lsr |= LSR_THRE

        if self.mcr & MCR_LOOP:
            self.receive(bytes([self.tsr]))
        elif self.chars_sent >= MAX_CHARS_PER_TICK:
            if self.tsr_retry <= MAX_XMIT_RETRY:
                self.tsr_retry += 1
                self._arm(Timer.TRANSMIT, now + self.char_transmit_time)
                return
            if self.poll_msl < 0:
                self.tsr_retry = -1
        else:
            if self._putchar is not None:
                self._putchar(self.tsr)
            self.chars_sent += 1
            self.tsr_retry = 0

        self.last_xmit_ts = self._clock()
        if not self.lsr & LSR_THRE:
            self._arm(Timer.TRANSMIT, self.last_xmit_ts + self.char_transmit_time)
        else:
            self.lsr |= LSR_TEMT
            self.thr_ipending = True
            self._update_irq()

    def receive(self, data: bytes) -> None:
        """Deliver bytes from the line into the receiver."""
        if not data:
            raise ValueError("no data to receive")
        if self.fcr & FCR_FE:
            for value in data:
                if not self.recv_fifo.put(value, False):
                    self.lsr |= LSR_OE
            self.lsr |= LSR_DR
            self._arm(Timer.FIFO_TIMEOUT, self._clock() + self.char_transmit_time * 4)
        else:
            if self.lsr & LSR_DR:
                self.lsr |= LSR_OE
            self.rbr = data[0]
            self.lsr |= LSR_DR
        self._update_irq()

    def can_receive(self) -> int:
        """Number of bytes the receiver is prepared to accept now."""
        if self.fcr & FCR_FE:
            count = len(self.recv_fifo)
            if count >= FIFO_LENGTH:
                return 0
            itl = self.recv_fifo.itl
            return itl - count if count <= itl else 1
        return 0 if self.lsr & LSR_DR else 1

    def fifo_timeout(self) -> None:
        """Character timeout: data sat in the receive FIFO unread."""
        if len(self.recv_fifo):
            self.timeout_ipending = True
            self._update_irq()

    # -- register access --------------------------------------------------

    def write(self, addr: int, value: int) -> None:
        """Write a register at offset ``addr`` (taken modulo 8)."""
        addr &= 7
        if addr == 0:
            if self.lcr & LCR_DLAB:
                self.divider = ((self.divider & 0xFF00) | value) & 0xFFFF
                self._update_parameters()
            else:
                self.thr = value & 0xFF
                self.thr_ipending = False
                if self.fcr & FCR_FE:
                    self.xmit_fifo.put(self.thr, True)
                    self.lsr &= ~(LSR_TEMT | LSR_THRE) & 0xFF
                else:
                    self.lsr &= ~LSR_THRE & 0xFF
                self._update_irq()
                self.transmit()
        elif addr == 1:
            if self.lcr & LCR_DLAB:
                self.divider = ((self.divider & 0x00FF) | (value << 8)) & 0xFFFF
                self._update_parameters()
            else:
                self.ier = value & 0x0F
                if self.poll_msl >= 0:
                    if self.ier & IER_MSI:
                        self.poll_msl = 1
                        self.update_modem_status()
                    else:
                        self.poll_msl = 0
                if self.lsr & LSR_THRE:
                    self.thr_ipending = True
                    self._update_irq()
        elif addr == 2:
            value &= 0xFF
            if self.fcr == value:
                return
            if (value ^ self.fcr) & FCR_FE:
                value |= FCR_XFR | FCR_RFR
            if value & FCR_RFR:
                self._cancel(Timer.FIFO_TIMEOUT)
                self.timeout_ipending = False
                self.recv_fifo.clear()
            if value & FCR_XFR:
                self.xmit_fifo.clear()
            if value & FCR_FE:
                self.iir |= IIR_FE
                self.recv_fifo.itl = _TRIGGER_LEVELS[value & 0xC0]
            else:
                self.iir &= ~IIR_FE & 0xFF
            self.fcr = value & 0xC9
            self._update_irq()
        elif addr == 3:
            self.lcr = value & 0xFF
            self._update_parameters()
            self.last_break_enable = (value >> 6) & 1
        elif addr == 4:
            self.mcr = value & 0x1F
        elif addr == 7:
            self.scr = value & 0xFF

    def read(self, addr: int) -> int:
        """Read the register at offset ``addr`` (taken modulo 8)."""
        addr &= 7
        if addr == 0:
            if self.lcr & LCR_DLAB:
                return self.divider & 0xFF
            if self.fcr & FCR_FE:
                ret = self.recv_fifo.get()
                if len(self.recv_fifo) == 0:
                    self.lsr &= ~(LSR_DR | LSR_BI) & 0xFF
                else:
                    self._arm(Timer.FIFO_TIMEOUT, self._clock() + self.char_transmit_time * 4)
                self.timeout_ipending = False
            else:
                ret = self.rbr
                self.lsr &= ~(LSR_DR | LSR_BI) & 0xFF
            self._update_irq()
            return ret
        if addr == 1:
            if self.lcr & LCR_DLAB:
                return (self.divider >> 8) & 0xFF
            return self.ier
        if addr == 2:
            ret = self.iir
            if ret & IIR_ID == IIR_THRI:
                self.thr_ipending = False
                self._update_irq()
            return ret
        if addr == 3:
            return self.lcr
        if addr == 4:
            return self.mcr
        if addr == 5:
            ret = self.lsr
            if self.lsr & (LSR_BI | LSR_OE):
                self.lsr &= ~(LSR_BI | LSR_OE) & 0xFF
                self._update_irq()
            return ret
        if addr == 6:
            if self.mcr & MCR_LOOP:
                ret = (self.mcr & 0x0C) << 4
                ret |= (self.mcr & 0x02) << 3
                ret |= (self.mcr & 0x01) << 5
                return ret
            if self.poll_msl >= 0:
                self.update_modem_status()
            ret = self.msr
            if self.msr & MSR_ANY_DELTA:
                self.msr &= 0xF0
                self._update_irq()
            return ret
        return self.scr

    # -- host events ------------------------------------------------------

    def _drain_input(self) -> None:
        while self.can_receive():
            value = self.input_ring.dequeue()
            if value is None:
                break
            self.receive(bytes([value]))
        if not self.can_receive():
            self._arm(Timer.MORE_CHARS, self._clock() + MORE_CHARS_DELAY_NS)

    def timer_interrupt(self, completed: int) -> None:
        """Handle the timers whose bits are set in ``completed``."""
        fired = Timer(completed & sum(Timer))
        for timer in Timer:
            if fired & timer:
                self.timers.pop(timer, None)
        if fired & Timer.FIFO_TIMEOUT:
            self.fifo_timeout()
        if fired & Timer.TRANSMIT:
            self.chars_sent = 0
            self.transmit()
        if fired & Timer.MODEM_STATUS:
            self.update_modem_status()
        if fired & Timer.MORE_CHARS:
            self._drain_input()

    def character_interrupt(self) -> None:
        """New characters are waiting in the input ring."""
        self._drain_input()

    def port_in(self, port: int, size: int) -> int:
        """Guest I/O port read; only single-byte accesses are supported."""
        if size != 1:
            raise ValueError("serial only supports reads of size 1")
        return self.read(port)

    def port_out(self, port: int, value: int, size: int) -> None:
        """Guest I/O port write; only single-byte accesses are supported."""
        if size != 1:
            raise ValueError("serial only supports writes of size 1")
        self.write(port, value)