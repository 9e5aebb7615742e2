[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vmmcomponents"
version = "0.1.0"
description = "Device models and helpers for a virtual machine monitor: a 16550A UART, a partition-sharing block server, a virtio block backend and VM resource tables."
requires-python = ">=3.10"
dependencies = []
keywords = ["vmm", "uart", "16550", "virtio", "sata", "emulation", "mbr", "partition"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vmmcomponents"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
