import pytest

from vmmcomponents.vmconfig import (
    CapAllocator,
    ExtraRamRegion,
    InitConnection,
    ObjectKind,
    build_exclude_regions,
    build_extra_ram,
    build_guest_maps,
    build_init_connections,
    build_ioports,
    build_irqs,
    build_pci_devices,
)


def test_allocator_gives_distinct_nonzero_slots():
    caps = CapAllocator()
    a = caps.alloc("a", ObjectKind.FRAME)
    b = caps.alloc("b", ObjectKind.FRAME)
    assert a != b
    assert 0 not in (a, b)
    assert len(caps) == 2


def test_allocator_same_name_returns_same_slot():
    caps = CapAllocator()
    first = caps.alloc("x", ObjectKind.UNTYPED, paddr=16)
    assert caps.alloc("x", ObjectKind.UNTYPED) == first
    assert len(caps) == 1
    assert caps.objects["x"].attrs == {"paddr": 16}


def test_allocator_kind_mismatch_raises():
    caps = CapAllocator()
    caps.alloc("x", ObjectKind.FRAME)
    with pytest.raises(ValueError):
        caps.alloc("x", ObjectKind.IOPORT)


def test_allocator_rejects_null_slot():
    with pytest.raises(ValueError):
        CapAllocator(first_slot=0)


def test_exclude_regions():
    assert build_exclude_regions({}) == []
    regions = [(0x1000, 0x2000), (0x8000, 0x100)]
    assert build_exclude_regions({"exclude_paddr": regions}) == regions


def test_extra_ram():
    caps = CapAllocator()
    regions = build_extra_ram({"ram": [(0x20000000, 24), (0x40000000, 25)]}, caps)
    assert [(r.paddr, r.size_bits) for r in regions] == [(0x20000000, 24), (0x40000000, 25)]
    alloc = caps.objects["extra_ram_cap_%d" % 0x20000000]
    assert regions[0] == ExtraRamRegion(0x20000000, 24, alloc.cap)
    assert alloc.kind is ObjectKind.UNTYPED
    assert alloc.attrs["size_bits"] == 24
    assert build_extra_ram({}, CapAllocator()) == []


def test_guest_maps_one_frame_per_page():
    caps = CapAllocator()
    paddr, page_bits = 0x10000, 12
    page = 2 ** page_bits
    table = build_guest_maps(
        {"guest_mappings": [{"paddr": paddr, "size": 3 * page, "page_bits": page_bits}]}, caps
    )
    assert len(table) == 3
    assert [m.frame for m in table.maps] == [paddr, paddr + page, paddr + 2 * page]
    assert all(m.size == page for m in table.maps)
    assert table.frame_cap(paddr + page) == caps.objects[f"gmap_frame_{paddr + page}"].cap
    assert table.frame_cap(paddr + 5 * page) == 0
    assert caps.objects[f"gmap_frame_{paddr}"].kind is ObjectKind.FRAME


def test_guest_maps_section_kind_and_bad_bits():
    caps = CapAllocator()
    table = build_guest_maps(
        {"guest_mappings": [{"paddr": 0, "size": 2 ** 21, "page_bits": 21}]}, caps
    )
    assert caps.objects["gmap_frame_0"].kind is ObjectKind.SECTION
    assert len(table) == 1
    with pytest.raises(ValueError):
        build_guest_maps({"guest_mappings": [{"paddr": 0, "size": 64, "page_bits": 13}]}, caps)


def test_init_connections():
    cons = build_init_connections(
        {
            "init_cons": [
                {"init": '"make_virtio_net"', "irq": '"virtio_net_notify"', "badge": 4},
                {"init": "make_virtio_blk"},
            ]
        }
    )
    assert cons == [
        InitConnection("make_virtio_net", "virtio_net_notify", 4),
        InitConnection("make_virtio_blk"),
    ]
    assert [c.has_interrupt for c in cons] == [True, False]
    assert build_init_connections({}) == []


def test_init_connection_irq_needs_badge():
    with pytest.raises(ValueError):
        build_init_connections({"init_cons": [{"init": "f", "irq": "g"}]})


def test_ioports_split_and_find():
    caps = CapAllocator()
    table = build_ioports(
        {
            "vm_ioports": [
                {"start": 0x3F8, "end": 0x3FF, "name": '"serial"', "pci_device": None},
                {"start": 0xC000, "end": 0xC0FF, "name": '"nic"', "pci_device": 1},
            ]
        },
        caps,
    )
    assert [p.name for p in table.pci] == ["nic"]
    assert [p.name for p in table.nonpci] == ["serial"]
    assert table.find(0xC010, 0xC020) == table.pci[0].cap
    assert table.find(0x3F8, 0x3F8) == table.nonpci[0].cap
    assert table.find(0x3F8, 0x400) == 0
    assert caps.objects["iport_%d_%d" % (0x3F8, 0x3FF)].attrs == {
        "start_port": 0x3F8,
        "end_port": 0x3FF,
    }


def test_irqs_share_notification():
    caps = CapAllocator()
    irqs = build_irqs(
        {
            "vm_irqs": [
                {"name": '"eth"', "source": 11, "level_trig": 1, "active_low": 1, "dest": 5},
                {"name": "ata", "source": 14, "level_trig": 0, "active_low": 0, "dest": 6},
            ]
        },
        caps,
    )
    notification = caps.objects["irq_notification_obj"]
    assert notification.kind is ObjectKind.NOTIFICATION
    assert [i.name for i in irqs] == ["eth", "ata"]
    handler = caps.objects["irq_11"]
    assert irqs[0].cap == handler.cap
    assert handler.attrs["notification"] == notification.cap
    assert handler.attrs["vector"] == 5
    assert handler.attrs["ioapic_pin"] == 11


def test_irqs_empty_still_allocates_notification():
    caps = CapAllocator()
    assert build_irqs({}, caps) == []
    assert list(caps.objects) == ["irq_notification_obj"]


def test_pci_devices_with_iospace():
    caps = CapAllocator()
    paddr, page_bits = 0xF0000000, 12
    page = 2 ** page_bits
    table = build_pci_devices(
        {
            "iospace_domain": 0x0F,
            "pci_devices_iospace": 1,
            "pci_devices": [
                {
                    "name": '"nic"',
                    "bus": 1,
                    "dev": 2,
                    "fun": 3,
                    "irq": '"eth_irq"',
                    "memory": [{"paddr": paddr, "size": 2 * page, "page_bits": page_bits}],
                }
            ],
        },
        caps,
    )
    device = table.devices[0]
    assert device.name == "nic"
    assert device.irq == "eth_irq"
    assert device.memory == ((paddr, 2 * page, page_bits),)
    assert device.pci_id == 1 * 256 + 2 * 8 + 3
    iospace = caps.objects[f"iospace_{0x0F * 65536 + device.pci_id}"]
    assert device.iospace_cap == iospace.cap
    assert iospace.kind is ObjectKind.IOSPACE
    assert table.frame_cap(paddr + page) == caps.objects[f"mmio_frame_{paddr + page}"].cap
    assert table.frame_cap(paddr + 2 * page) == 0


def test_pci_devices_without_iospace():
    caps = CapAllocator()
    table = build_pci_devices(
        {"pci_devices": [{"name": "d", "bus": 0, "dev": 1, "fun": 0, "irq": "i", "memory": []}]},
        caps,
    )
    assert table.devices[0].iospace_cap == 0
    assert table.devices[0].memory == ()
    assert len(caps) == 0


def test_pci_iospace_requires_domain():
    with pytest.raises(ValueError):
        build_pci_devices(
            {
                "pci_devices_iospace": 1,
                "pci_devices": [{"name": "d", "bus": 0, "dev": 0, "fun": 0, "irq": "i"}],
            },
            CapAllocator(),
        )