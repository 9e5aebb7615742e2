# vmmcomponents

This package provides device models and configuration helpers for a virtual machine monitor.
You call them from your own monitor loop. None of them touches real hardware, and the package has no dependencies outside the standard library.

## Modules

### `vmmcomponents.fifo`

`SerialFifo` is the 16-byte FIFO of a 16550A.

- `put(value, overwrite)` returns `False` when the FIFO was already full.
  - A receive FIFO keeps its contents when full.
  - A transmit FIFO (`overwrite=True`) overwrites when full.
- `get()` returns 0 when the FIFO is empty.
- `len()` gives the number of bytes held.
- The attribute `itl` is the receive trigger level.

### `vmmcomponents.uart`

`Uart16550` is an emulated 16550A serial port.

Register access:

- `read(addr)` and `write(addr, value)` access the eight registers.
- `port_in(port, size)` and `port_out(port, value, size)` do the same for guest port accesses. They raise `ValueError` for any size other than 1.

Features:

- Divisor latch and line parameters.
- Receive and transmit FIFOs.
- Interrupt identification.
- Modem status with delta bits.
- Scratch register.
- Loopback mode.

Constructor callbacks, all keyword-only and all optional:

- `putchar(byte)` receives each transmitted byte.
- `set_irq(level)` is told the state of the interrupt line.
- `clock()` returns nanoseconds. It defaults to `time.monotonic_ns`.
- `input_ring` is a `CharRing`.

Timers:

- The UART arms one-shot timers by recording absolute deadlines in `uart.timers`, keyed by `Timer` member. The members are `FIFO_TIMEOUT`, `TRANSMIT`, `MODEM_STATUS` and `MORE_CHARS`.
- Your loop fires a timer by calling `timer_interrupt(bits)`.
- At most 16 characters go out per transmit tick. After that, transmission is retried on the `TRANSMIT` timer.

Input:

- `CharRing` holds incoming characters.
- Call `character_interrupt()` after you `enqueue` data. The UART then pulls as many bytes as it can accept. If it cannot accept more, it arms `MORE_CHARS` to try again 3 ms later.

### `vmmcomponents.partitions`

- `PartitionEntry` is a 16-byte MBR primary partition entry, with `to_bytes()` and `from_bytes()`.
- `lba_to_chs(lba)` gives `(cylinder, head, sector)`. Addresses beyond CHS reach saturate at 1023/255/63.
- `pack_sec_cyl(sec, cyl)` packs the two values into the 16-bit MBR field.
- `read_partition_table(block)` returns the four entries at byte offset 446 of a boot sector.

### `vmmcomponents.sataserver`

`SataServer(disk, clients)` shares the primary partitions of one disk among several clients.

Arguments:

- `disk` must provide `read_sectors(lba, count) -> bytes` and `write_sectors(lba, data)`.
- `clients` maps a client id to the 1-based partition numbers the client owns.

`initialise()` reads the boot sector and lays out a virtual disk for each `Client`:

- The client's partitions are placed back to back, starting at sector 64.
- Reads of sector 0 return the boot sector with a rewritten partition table.
- Reads of sectors 1–63 return zeros.
- Writes below sector 64 are discarded.

Invalid configurations are these:

- a partition number outside 1–4
- a partition given to two clients
- more than four partitions for one client

An invalid configuration is reported by `get_status()` as `SataStatus.INVALID_CONF`. Before initialisation the status is `NOT_DONE`, and after a valid initialisation it is `GOOD`.

Errors from `read`, `write` and `capacity`:

- `read` and `write` raise `RuntimeError` before initialisation.
- They raise `ValueError` for transfers over 4096 bytes, or for sectors that lie outside the client's partitions.
- All three raise `KeyError` for unknown clients.

```python
from vmmcomponents.partitions import PartitionEntry
from vmmcomponents.sataserver import SataServer

class MemoryDisk:
    def __init__(self, sectors):
        self.data = bytearray(sectors * 512)
    def read_sectors(self, lba, count):
        return bytes(self.data[lba * 512:(lba + count) * 512])
    def write_sectors(self, lba, data):
        self.data[lba * 512:lba * 512 + len(data)] = data

disk = MemoryDisk(4096)
disk.data[446:462] = PartitionEntry(sys_id=0x83, start_lba=2048, num_sectors=1024).to_bytes()

server = SataServer(disk, {1: [1]})
server.initialise()
server.capacity(1)                 # 1088: 64 + 1024 sectors
server.write(1, 64, b"x" * 512)    # lands on physical sector 2048
```

### `vmmcomponents.vmconfig`

These builders turn a VM component's configuration mapping into resource tables:

| Function | Returns |
|---|---|
| `build_exclude_regions(config)` | a list of `(paddr, bytes)` |
| `build_extra_ram(config, caps)` | a list of `ExtraRamRegion` |
| `build_guest_maps(config, caps)` | a `GuestMapTable`, with `frame_cap(paddr)` |
| `build_init_connections(config)` | a list of `InitConnection` |
| `build_ioports(config, caps)` | an `IOPortTable`, with `find(start, end)` |
| `build_irqs(config, caps)` | a list of `VMIrq` |
| `build_pci_devices(config, caps)` | a `PCIDeviceTable` of `PCIDevice`, with `frame_cap(paddr)` |

Capability slots come from a `CapAllocator`:

- It numbers slots from 1.
- Asking again for a name returns that name's existing slot.

```python
from vmmcomponents.vmconfig import CapAllocator, build_ioports

ports = build_ioports(
    {"vm_ioports": [{"start": 0x3F8, "end": 0x3FF, "name": '"serial"', "pci_device": None}]},
    CapAllocator(),
)
ports.find(0x3F8, 0x3FF)   # 1
```

### `vmmcomponents.blockdev`

`VirtioBlkBackend(server)` connects a virtio block device to a block server. The server object must provide:

- a `dataport` buffer
- `get_status()`
- `get_capacity()`
- `rx(sector, length)`
- `tx(sector, length)`

The backend has three methods:

- `wait_ready()` polls until the server is ready. It raises `RuntimeError` if the configuration is invalid.
- `init_config()` returns a `BlkConfig`.
- `transfer(direction, sector, length, buffer)` moves data between the buffer and the dataport. It returns an `XferResult`.

`BlkRequest` lists the request types.

### `vmmcomponents.stringreverse`

`reverse_dataport_string(src, size)` reverses the NUL-terminated string in a buffer of `size` bytes and returns it NUL-terminated.

```python
from vmmcomponents.stringreverse import reverse_dataport_string

reverse_dataport_string(b"hello\0", 8192)   # b"olleh\0"
```

## What the package does not do

- There is no command-line program and no monitor loop. You wire the devices into your own.
- It has no I/O-port bus, PCI space or virtqueue emulation. `VirtioBlkBackend` supplies only the backend side of a block device.
- `SataServer` ships no disk driver. You pass in any object with `read_sectors` and `write_sectors`.
- The capability numbers from `CapAllocator` are bookkeeping only. No kernel objects are created.

## Installing and testing

```
pip install .
pip install ".[test]"
pytest
```