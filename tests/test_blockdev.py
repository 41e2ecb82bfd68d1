import pytest

from simpleos.blockdev import (
    SECTOR_SIZE,
    VIRTIO_NUM_DESC,
    VRING_DESC_F_NEXT,
    BlockDeviceError,
    BlockRequest,
    Descriptor,
    DescriptorPool,
    VirtioBlockDevice,
)


def pattern():
    return bytes(i & 0xFF for i in range(SECTOR_SIZE))


def test_write_then_read_round_trip():
    image = bytearray(SECTOR_SIZE * 4)
    device = VirtioBlockDevice(image)
    device.write_sector(0, pattern())
    assert device.read_sector(0) == pattern()


def test_write_changes_only_target_sector():
    image = bytearray(SECTOR_SIZE * 4)
    device = VirtioBlockDevice(image)
    device.write_sector(2, b"\xaa" * SECTOR_SIZE)
    assert image[2 * SECTOR_SIZE : 3 * SECTOR_SIZE] == b"\xaa" * SECTOR_SIZE
    assert image[: 2 * SECTOR_SIZE] == bytes(2 * SECTOR_SIZE)
    assert device.read_sector(3) == bytes(SECTOR_SIZE)


def test_read_reflects_existing_image_contents():
    image = bytearray(SECTOR_SIZE * 2)
    image[SECTOR_SIZE:] = b"\x11" * SECTOR_SIZE
    device = VirtioBlockDevice(image)
    assert device.read_sector(1) == b"\x11" * SECTOR_SIZE


def test_file_image_round_trip(tmp_path):
    path = tmp_path / "disk.img"
    path.write_bytes(bytes(SECTOR_SIZE * 3))
    with open(path, "r+b") as handle:
        device = VirtioBlockDevice(handle)
        assert device.sector_count == 3
        device.write_sector(1, pattern())
        assert device.read_sector(1) == pattern()
    assert path.read_bytes()[SECTOR_SIZE : 2 * SECTOR_SIZE] == pattern()


def test_read_past_end_raises():
    device = VirtioBlockDevice(bytearray(SECTOR_SIZE))
    with pytest.raises(BlockDeviceError):
        device.read_sector(1)


def test_write_past_end_raises():
    device = VirtioBlockDevice(bytearray(SECTOR_SIZE))
    with pytest.raises(BlockDeviceError):
        device.write_sector(5, bytes(SECTOR_SIZE))


def test_wrong_length_write_rejected():
    device = VirtioBlockDevice(bytearray(SECTOR_SIZE))
    with pytest.raises(ValueError):
        device.write_sector(0, b"short")


def test_negative_sector_rejected():
    device = VirtioBlockDevice(bytearray(SECTOR_SIZE))
    with pytest.raises(ValueError):
        device.read_sector(-1)


def test_immutable_image_rejected():
    with pytest.raises(TypeError):
        VirtioBlockDevice(bytes(SECTOR_SIZE))


def test_descriptors_returned_after_many_requests():
    device = VirtioBlockDevice(bytearray(SECTOR_SIZE * 2))
    for round_number in range(VIRTIO_NUM_DESC * 3):
        device.write_sector(round_number % 2, bytes([round_number]) * SECTOR_SIZE)
        device.read_sector(round_number % 2)
    assert device.pool.free_count == len(device.pool)


def test_descriptors_returned_after_failed_request():
    device = VirtioBlockDevice(bytearray(SECTOR_SIZE))
    with pytest.raises(BlockDeviceError):
        device.read_sector(9)
    assert device.pool.free_count == len(device.pool)


def test_pool_alloc_lowest_first_and_exhaustion():
    pool = DescriptorPool(4)
    assert [pool.alloc() for _ in range(4)] == list(range(4))
    with pytest.raises(BlockDeviceError):
        pool.alloc()


def test_pool_alloc3_is_all_or_nothing():
    pool = DescriptorPool(4)
    pool.alloc()
    pool.alloc()
    with pytest.raises(BlockDeviceError):
        pool.alloc3()
    assert pool.free_count == 2


def test_pool_alloc3_returns_distinct_indices():
    pool = DescriptorPool()
    taken = pool.alloc3()
    assert len(set(taken)) == 3
    assert pool.free_count == len(pool) - 3


def test_pool_free_twice_raises():
    pool = DescriptorPool(2)
    index = pool.alloc()
    pool.free(index)
    with pytest.raises(BlockDeviceError):
        pool.free(index)


def test_pool_free_invalid_index_raises():
    pool = DescriptorPool(2)
    with pytest.raises(BlockDeviceError):
        pool.free(len(pool))


def test_pool_free_resets_descriptor():
    pool = DescriptorPool(2)
    index = pool.alloc()
    pool.descriptors[index] = Descriptor(b"x", 1, VRING_DESC_F_NEXT, 1)
    pool.free(index)
    assert pool.descriptors[index] == Descriptor()
    assert pool.is_free(index)


def test_pool_free_chain_follows_links():
    pool = DescriptorPool(4)
    a, b, c = pool.alloc3()
    d = pool.alloc()
    pool.descriptors[a] = Descriptor(None, 0, VRING_DESC_F_NEXT, b)
    pool.descriptors[b] = Descriptor(None, 0, VRING_DESC_F_NEXT, c)
    pool.descriptors[c] = Descriptor(None, 0, 0, 0)
    pool.free_chain(a)
    assert all(pool.is_free(i) for i in (a, b, c))
    assert not pool.is_free(d)


def test_pool_size_must_be_positive():
    with pytest.raises(ValueError):
        DescriptorPool(0)


def test_request_header_round_trip():
    request = BlockRequest(1, 42)
    assert len(request.to_bytes()) == 16
    assert BlockRequest.from_bytes(request.to_bytes()) == request