"""Device models and helpers for a virtual machine monitor: a 16550A UART,
a partition-sharing block server, a virtio block backend and VM resource tables."""

__version__ = "0.1.0"