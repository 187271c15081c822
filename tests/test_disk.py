import pytest

from mipsemu.disk import (
    DISK_SIZE,
    MAGIC_SIZE,
    NUM_SECTORS,
    SECTOR_SIZE,
    SECTORS_PER_TRACK,
    Disk,
    DiskError,
)
from mipsemu.interrupt import Interrupt, IntType
from mipsemu.stats import ROTATION_TIME, SEEK_TIME, Statistics


@pytest.fixture
def interrupt():
    return Interrupt(Statistics())


@pytest.fixture
def disk_path(tmp_path):
    return str(tmp_path / "DISK")


def _complete(interrupt):
    assert interrupt.check_if_due(True)


def test_new_disk_file_has_magic_and_full_size(interrupt, disk_path):
    with Disk(interrupt, disk_path):
        pass
    with open(disk_path, "rb") as f:
        content = f.read()
    assert len(content) == DISK_SIZE
    assert content[:MAGIC_SIZE] == b"\xab\x89\x67\x45"


def test_write_then_read_round_trip(interrupt, disk_path):
    payload = bytes(range(SECTOR_SIZE))
    done = []
    with Disk(interrupt, disk_path, lambda: done.append(1)) as disk:
        disk.write_request(5, payload)
        assert disk.active
        _complete(interrupt)
        assert not disk.active
        assert disk.read_request(5) == payload
        _complete(interrupt)
    assert len(done) == 2
    assert interrupt.stats.num_disk_writes == 1
    assert interrupt.stats.num_disk_reads == 1


def test_contents_persist_across_reopen(interrupt, disk_path):
    payload = b"\x5a" * SECTOR_SIZE
    with Disk(interrupt, disk_path) as disk:
        disk.write_request(NUM_SECTORS - 1, payload)
        _complete(interrupt)
    with Disk(interrupt, disk_path) as disk:
        assert disk.read_request(NUM_SECTORS - 1) == payload


def test_fresh_sector_reads_as_zeros(interrupt, disk_path):
    with Disk(interrupt, disk_path) as disk:
        assert disk.read_request(3) == bytes(SECTOR_SIZE)


def test_second_request_while_active_raises(interrupt, disk_path):
    with Disk(interrupt, disk_path) as disk:
        disk.read_request(0)
        with pytest.raises(DiskError):
            disk.read_request(1)


@pytest.mark.parametrize("sector", [-1, NUM_SECTORS])
def test_sector_out_of_range(interrupt, disk_path, sector):
    with Disk(interrupt, disk_path) as disk:
        with pytest.raises(ValueError):
            disk.read_request(sector)


def test_write_requires_whole_sector(interrupt, disk_path):
    with Disk(interrupt, disk_path) as disk:
        with pytest.raises(ValueError):
            disk.write_request(0, b"short")


def test_file_without_magic_is_rejected(interrupt, tmp_path):
    path = tmp_path / "notadisk"
    path.write_bytes(b"\x00" * 16)
    with pytest.raises(DiskError):
        Disk(interrupt, str(path))


def test_request_schedules_disk_interrupt(interrupt, disk_path):
    with Disk(interrupt, disk_path) as disk:
        latency = disk.compute_latency(0, False)
        disk.read_request(0)
        pending = interrupt.pending
        assert [p.kind for p in pending] == [IntType.DISK]
        assert pending[0].when == latency


def test_latency_at_start_is_one_rotation(interrupt, disk_path):
    with Disk(interrupt, disk_path) as disk:
        assert disk.compute_latency(0, False) == ROTATION_TIME
        assert disk.compute_latency(0, True) == ROTATION_TIME


def test_latency_to_other_track_includes_seek(interrupt, disk_path):
    with Disk(interrupt, disk_path) as disk:
        same_track = disk.compute_latency(1, True)
        other_track = disk.compute_latency(SECTORS_PER_TRACK, True)
        assert other_track >= SEEK_TIME + ROTATION_TIME
        assert same_track < SEEK_TIME + ROTATION_TIME * (SECTORS_PER_TRACK + 1)


def test_latency_never_less_than_transfer_time(interrupt, disk_path):
    with Disk(interrupt, disk_path) as disk:
        for sector in (0, 7, 31, 64, NUM_SECTORS - 1):
            for writing in (False, True):
                assert disk.compute_latency(sector, writing) >= ROTATION_TIME