"""Static VM resource tables built from a component's configuration.

Each builder takes the configuration attributes of a VM component (a mapping
such as ``{"ram": [...], "vm_irqs": [...]}``) and, where the resource needs
kernel objects, a :class:`CapAllocator` that hands out capability slots.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


class ObjectKind(str, Enum):
    """Kinds of kernel object a VM component may be given."""

    UNTYPED = "untyped"
    FRAME = "frame"
    SECTION = "section"
    IOPORT = "ioport"
    IRQ_HANDLER = "irq_handler"
    NOTIFICATION = "notification"
    IOSPACE = "iospace"


_BITS_TO_FRAME_KIND = {
    12: ObjectKind.FRAME,
    20: ObjectKind.SECTION,
    21: ObjectKind.SECTION,
}


@dataclass(frozen=True)
class Allocation:
    """A kernel object placed in a capability slot."""

    cap: int
    kind: ObjectKind
    attrs: Mapping[str, Any]


class CapAllocator:
    """Hands out capability slots for named kernel objects.

    Slots are numbered upward from ``first_slot``; slot 0 is the null
    capability and is never handed out. Asking again for a name already
    allocated returns its slot, provided the kind matches.
    """

    def __init__(self, first_slot: int = 1) -> None:
        if first_slot < 1:
            raise ValueError("slot 0 is the null capability")
        self._next = first_slot
        self.objects: Dict[str, Allocation] = {}

    def alloc(self, name: str, kind: ObjectKind, **kwargs: Any) -> int:
        """Allocate (or look up) the object ``name`` and return its slot."""
        kind = ObjectKind(kind)
        existing = self.objects.get(name)
        if existing is not None:
            if existing.kind != kind:
                raise ValueError(
                    f"object {name!r} already allocated as {existing.kind.value}, not {kind.value}"
                )
            return existing.cap
        cap = self._next
        self._next += 1
        self.objects[name] = Allocation(cap, kind, dict(kwargs))
        return cap

    def __len__(self) -> int:
        return len(self.objects)


def _unquote(value: str) -> str:
    return value.strip('"')


def _frame_kind(page_bits: int) -> ObjectKind:
    try:
        return _BITS_TO_FRAME_KIND[page_bits]
    except KeyError:
        raise ValueError(f"unsupported page size of {page_bits} bits") from None


def _frames(paddr: int, size: int, page_bits: int) -> range:
    return range(paddr, paddr + max(size, 0), 2 ** page_bits) if size > 0 else range(0)


# -- excluded guest physical regions ---------------------------------------


def build_exclude_regions(config: Mapping[str, Any]) -> List[Tuple[int, int]]:
    """Guest physical ``(paddr, bytes)`` regions the VM must not use."""
    regions = config.get("exclude_paddr") or []
    return [(int(paddr), int(size)) for paddr, size in regions]


# -- extra RAM -------------------------------------------------------------


@dataclass(frozen=True)
class ExtraRamRegion:
    """An untyped region of physical memory handed to the VM as RAM."""

    paddr: int
    size_bits: int
    cap: int


def build_extra_ram(config: Mapping[str, Any], caps: CapAllocator) -> List[ExtraRamRegion]:
    """Allocate an untyped for each ``(paddr, size_bits)`` in ``ram``."""
    regions = []
    for paddr, size_bits in config.get("ram") or []:
        cap = caps.alloc(
            f"extra_ram_cap_{paddr}",
            ObjectKind.UNTYPED,
            read=True,
            write=True,
            paddr=paddr,
            size_bits=size_bits,
        )
        regions.append(ExtraRamRegion(paddr, size_bits, cap))
    return regions


# -- guest mappings --------------------------------------------------------


@dataclass(frozen=True)
class GuestMap:
    """One frame of a region mapped into the guest."""

    region_paddr: int
    size: int
    page_bits: int
    frame: int
    cap: int


@dataclass
class GuestMapTable:
    """Frames mapped into the guest, in allocation order."""

    maps: List[GuestMap] = field(default_factory=list)

    def frame_cap(self, paddr: int) -> int:
        """Capability to the frame at ``paddr``, or 0 if there is none."""
        return next((m.cap for m in self.maps if m.frame == paddr), 0)

    def __len__(self) -> int:
        return len(self.maps)


def build_guest_maps(config: Mapping[str, Any], caps: CapAllocator) -> GuestMapTable:
    """Allocate a frame for every page of every entry in ``guest_mappings``."""
    table = GuestMapTable()
    for gmap in config.get("guest_mappings") or []:
        page_bits = gmap["page_bits"]
        kind = _frame_kind(page_bits)
        for frame in _frames(gmap["paddr"], gmap["size"], page_bits):
            cap = caps.alloc(f"gmap_frame_{frame}", kind, paddr=frame, read=True, write=True)
            table.maps.append(GuestMap(gmap["paddr"], 2 ** page_bits, page_bits, frame, cap))
    return table


# -- init connections ------------------------------------------------------


@dataclass(frozen=True)
class InitConnection:
    """A device set up by the VMM at start and, optionally, its event handler."""

    init: str
    irq: Optional[str] = None
    badge: Optional[int] = None

    @property
    def has_interrupt(self) -> bool:
        return self.irq is not None


def build_init_connections(config: Mapping[str, Any]) -> List[InitConnection]:
    """Read the ``init_cons`` entries, stripping quotes from function names."""
    connections = []
    for con in config.get("init_cons") or []:
        if "irq" in con:
            if "badge" not in con:
                raise ValueError(f"connection {con['init']!r} has an irq but no badge")
            connections.append(
                InitConnection(_unquote(con["init"]), _unquote(con["irq"]), con["badge"])
            )
        else:
            connections.append(InitConnection(_unquote(con["init"])))
    return connections


# -- I/O ports -------------------------------------------------------------


@dataclass(frozen=True)
class IOPort:
    """A range of x86 I/O ports passed through to the guest."""

    cap: int
    start: int
    end: int
    name: str


@dataclass
class IOPortTable:
    """Passed-through I/O port ranges, split by whether a PCI device owns them."""

    pci: List[IOPort] = field(default_factory=list)
    nonpci: List[IOPort] = field(default_factory=list)

    def find(self, start: int, end: int) -> int:
        """Capability of the first range holding ``start..end``, or 0."""
        for port in self.pci + self.nonpci:
            if start >= port.start and end <= port.end:
                return port.cap
        return 0


def build_ioports(config: Mapping[str, Any], caps: CapAllocator) -> IOPortTable:
    """Allocate an I/O port capability for every entry in ``vm_ioports``."""
    table = IOPortTable()
    for ioport in config.get("vm_ioports") or []:
        start, end = ioport["start"], ioport["end"]
        cap = caps.alloc(f"iport_{start}_{end}", ObjectKind.IOPORT, start_port=start, end_port=end)
        port = IOPort(cap, start, end, _unquote(ioport["name"]))
        if ioport.get("pci_device") is not None:
            table.pci.append(port)
        else:
            table.nonpci.append(port)
    return table


# -- IRQs ------------------------------------------------------------------


@dataclass(frozen=True)
class VMIrq:
    """A hardware interrupt routed through the I/O APIC to the guest."""

    name: str
    source: int
    level_trig: int
    active_low: int
    dest: int
    cap: int


def build_irqs(config: Mapping[str, Any], caps: CapAllocator) -> List[VMIrq]:
    """Allocate an IRQ handler for every entry in ``vm_irqs``.

    All handlers signal one shared notification object, which is allocated
    even when no IRQs are configured.
    """
    notification = caps.alloc("irq_notification_obj", ObjectKind.NOTIFICATION, read=True)
    irqs = []
    for irq in config.get("vm_irqs") or []:
        cap = caps.alloc(
            f"irq_{irq['source']}",
            ObjectKind.IRQ_HANDLER,
            vector=irq["dest"],
            ioapic=0,
            ioapic_pin=irq["source"],
            level=irq["level_trig"],
            polarity=irq["active_low"],
            notification=notification,
        )
        irqs.append(
            VMIrq(
                _unquote(irq["name"]),
                irq["source"],
                irq["level_trig"],
                irq["active_low"],
                irq["dest"],
                cap,
            )
        )
    return irqs


# -- PCI devices -----------------------------------------------------------


@dataclass(frozen=True)
class PCIDevice:
    """A PCI device passed through to the guest."""

    name: str
    bus: int
    dev: int
    fun: int
    iospace_cap: int
    irq: str
    memory: Tuple[Tuple[int, int, int], ...]

    @property
    def pci_id(self) -> int:
        return self.bus * 256 + self.dev * 8 + self.fun


@dataclass
class PCIDeviceTable:
    """Passed-through PCI devices and the frames backing their MMIO regions."""

    devices: List[PCIDevice] = field(default_factory=list)
    frames: Dict[int, int] = field(default_factory=dict)

    def frame_cap(self, paddr: int) -> int:
        """Capability to the MMIO frame at ``paddr``, or 0 if there is none."""
        return self.frames.get(paddr, 0)

    def __len__(self) -> int:
        return len(self.devices)


def build_pci_devices(config: Mapping[str, Any], caps: CapAllocator) -> PCIDeviceTable:
    """Allocate IOMMU spaces and MMIO frames for every entry in ``pci_devices``."""
    domain = config.get("iospace_domain")
    has_iospace = bool(config.get("pci_devices_iospace"))
    table = PCIDeviceTable()
    for device in config.get("pci_devices") or []:
        bus, dev, fun = device["bus"], device["dev"], device["fun"]
        pci_id = bus * 256 + dev * 8 + fun
        iospace_cap = 0
        if has_iospace:
            if domain is None:
                raise ValueError("pci_devices_iospace is set but iospace_domain is not")
            iospace_cap = caps.alloc(
                f"iospace_{domain * 65536 + pci_id}",
                ObjectKind.IOSPACE,
                domainID=domain,
                bus=bus,
                dev=dev,
                fun=fun,
            )
        ranges = []
        for mem in device.get("memory") or []:
            kind = _frame_kind(mem["page_bits"])
            for frame in _frames(mem["paddr"], mem["size"], mem["page_bits"]):
                table.frames[frame] = caps.alloc(
                    f"mmio_frame_{frame}", kind, paddr=frame, read=True, write=True
                )
            ranges.append((mem["paddr"], mem["size"], mem["page_bits"]))
        table.devices.append(
            PCIDevice(
                _unquote(device["name"]),
                bus,
                dev,
                fun,
                iospace_cap,
                _unquote(device["irq"]),
                tuple(ranges),
            )
        )
    return table