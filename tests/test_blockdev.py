import pytest

from vmmcomponents.blockdev import (
    VIRTIO_BLK_DISK_BLK_SIZE,
    VIRTIO_BLK_SEG_MAX,
    VIRTIO_BLK_SIZE_MAX,
    BlkConfig,
    BlkRequest,
    VirtioBlkBackend,
    XferResult,
)
from vmmcomponents.sataserver import SataStatus


class FakeServer:
    def __init__(self, statuses=(SataStatus.GOOD,), capacity=100, sectors=8):
        self._statuses = list(statuses)
        self.capacity = capacity
        self.dataport = bytearray(4096)
        self.disk = bytearray(sectors * 512)
        self.status_calls = 0
        self.fail = False

    def get_status(self):
        self.status_calls += 1
        if len(self._statuses) > 1:
            return self._statuses.pop(0)
        return self._statuses[0]

    def get_capacity(self):
        return self.capacity

    def rx(self, sector, length):
        if self.fail:
            return 0
        start = sector * 512
        self.dataport[:length] = self.disk[start:start + length]
        return length

    def tx(self, sector, length):
        if self.fail:
            return 0
        start = sector * 512
        self.disk[start:start + length] = self.dataport[:length]
        return length


def test_wait_ready_polls_until_done():
    server = FakeServer(statuses=[SataStatus.NOT_DONE, SataStatus.NOT_DONE, SataStatus.GOOD])
    VirtioBlkBackend(server).wait_ready()
    assert server.status_calls == 3


def test_wait_ready_invalid_configuration_raises():
    server = FakeServer(statuses=[SataStatus.NOT_DONE, SataStatus.INVALID_CONF])
    with pytest.raises(RuntimeError):
        VirtioBlkBackend(server).wait_ready()


def test_init_config_uses_capacity_and_fixed_limits():
    config = VirtioBlkBackend(FakeServer(capacity=1234)).init_config()
    assert config == BlkConfig(1234, VIRTIO_BLK_SEG_MAX, VIRTIO_BLK_SIZE_MAX, VIRTIO_BLK_DISK_BLK_SIZE)
    assert config.blk_size == 512
    assert config.size_max == 4096


def test_write_then_read_round_trip():
    server = FakeServer()
    backend = VirtioBlkBackend(server)
    payload = bytearray(range(256)) * 2
    assert backend.transfer(BlkRequest.OUT, 3, len(payload), payload) is XferResult.COMPLETE
    assert server.disk[3 * 512:4 * 512] == payload

    out = bytearray(512)
    assert backend.transfer(BlkRequest.IN, 3, 512, out) is XferResult.COMPLETE
    assert out == payload


def test_read_copies_from_dataport_into_buffer():
    server = FakeServer()
    server.disk[0:4] = b"\x01\x02\x03\x04"
    out = bytearray(4)
    result = VirtioBlkBackend(server).transfer(BlkRequest.IN, 0, 4, out)
    assert result is XferResult.COMPLETE
    assert out == b"\x01\x02\x03\x04"


def test_server_failure_reports_failed():
    server = FakeServer()
    server.fail = True
    out = bytearray(512)
    assert VirtioBlkBackend(server).transfer(BlkRequest.IN, 1, 512, out) is XferResult.FAILED
    assert VirtioBlkBackend(server).transfer(BlkRequest.OUT, 1, 512, out) is XferResult.FAILED


@pytest.mark.parametrize("request_type", [BlkRequest.SCSI_CMD, BlkRequest.FLUSH, BlkRequest.GET_ID])
def test_requests_without_data_leave_disk_untouched(request_type):
    server = FakeServer()
    before = bytes(server.disk)
    buf = bytearray(b"\xff" * 512)
    assert VirtioBlkBackend(server).transfer(request_type, 0, 512, buf) is XferResult.FAILED
    assert bytes(server.disk) == before
    assert buf == b"\xff" * 512


def test_invalid_command_raises():
    with pytest.raises(ValueError):
        VirtioBlkBackend(FakeServer()).transfer(3, 0, 512, bytearray(512))


def test_request_values_follow_virtio():
    assert [BlkRequest.IN, BlkRequest.OUT, BlkRequest.FLUSH] == [0, 1, 4]
    assert BlkRequest(8) is BlkRequest.GET_ID