"""
Pytest configuration and shared fixtures for disk_shrink tests.

MemoryImage is a sparse in-memory DiskImage: only written sectors are
stored, so multi-GiB images cost nothing. Failures can be injected per
operation to simulate transient storage errors.
"""

import os
from typing import Dict

import pytest

from disk_shrink.errors import DiskImageError, ImageNotFoundError
from disk_shrink.footer import FOOTER_SIZE, VhdFooter
from disk_shrink.images import DiskImage

SECTOR = 512
GIB = 1024 ** 3


class MemoryImage(DiskImage):
    """Sparse byte image kept in memory"""

    def __init__(self, name: str, length: int = 0, data: bytes = b''):
        self._name = name
        self._length = max(length, len(data))
        self.sectors: Dict[int, bytes] = {}
        self.deleted = False
        self.failures: Dict[str, Exception] = {}
        self.calls = []
        if data:
            self._put(0, data)

    def fail_next(self, operation: str, reason: str = 'simulated failure'):
        """Make the next call of operation raise a DiskImageError"""
        self.failures[operation] = DiskImageError(self._name, operation, reason)

    def _check(self, operation: str):
        self.calls.append(operation)
        if self.deleted:
            raise ImageNotFoundError(self._name, operation, 'image deleted')
        error = self.failures.pop(operation, None)
        if error:
            raise error

    def _put(self, offset: int, data: bytes):
        pos = 0
        while pos < len(data):
            index, within = divmod(offset + pos, SECTOR)
            chunk = data[pos:pos + SECTOR - within]
            sector = bytearray(self.sectors.get(index, bytes(SECTOR)))
            sector[within:within + len(chunk)] = chunk
            self.sectors[index] = bytes(sector)
            pos += len(chunk)
        self._length = max(self._length, offset + len(data))

    def _get(self, offset: int, size: int) -> bytes:
        end = min(offset + size, self._length)
        out = bytearray()
        pos = offset
        while pos < end:
            index, within = divmod(pos, SECTOR)
            take = min(SECTOR - within, end - pos)
            out += self.sectors.get(index, bytes(SECTOR))[within:within + take]
            pos += take
        return bytes(out)

    @property
    def name(self) -> str:
        return self._name

    @property
    def length(self) -> int:
        self._check('length')
        return self._length

    def read(self, offset: int, size: int) -> bytes:
        self._check('read')
        return self._get(offset, size)

    def write(self, offset: int, data: bytes):
        self._check('write')
        self._put(offset, data)

    def resize(self, length: int):
        self._check('resize')
        for index in [i for i in self.sectors if i * SECTOR >= length]:
            del self.sectors[index]
        index, within = divmod(length, SECTOR)
        if within and index in self.sectors:
            self.sectors[index] = self.sectors[index][:within] + bytes(SECTOR - within)
        self._length = length

    def delete(self):
        self._check('delete')
        self.deleted = True

    def tail(self) -> bytes:
        """Last 512 bytes, read without recording a call"""
        return self._get(self._length - FOOTER_SIZE, FOOTER_SIZE)


def make_reference(name: str, length: int) -> MemoryImage:
    """Empty fixed VHD of length bytes with a valid footer"""
    image = MemoryImage(name, length)
    image._put(length - FOOTER_SIZE, VhdFooter.for_fixed_disk(length - FOOTER_SIZE).to_bytes())
    return image


def make_pattern_reference(name: str, length: int, pattern: bytes) -> MemoryImage:
    """Image of length bytes whose last 512 bytes are pattern"""
    assert len(pattern) == FOOTER_SIZE
    image = MemoryImage(name, length)
    image._put(length - FOOTER_SIZE, pattern)
    return image


@pytest.fixture
def footer_pattern() -> bytes:
    """Arbitrary, non-VHD 512-byte block"""
    return bytes((i * 7 + 3) % 256 for i in range(FOOTER_SIZE))


@pytest.fixture
def disk_data() -> bytes:
    """A few sectors of recognisable disk content"""
    return b'BOOTSECT' * 64 + os.urandom(SECTOR * 3)


@pytest.fixture
def target_image(disk_data) -> MemoryImage:
    """Source disk copy, still at its original (larger) size"""
    image = MemoryImage('target.vhd', 4 * 1024 * 1024 + FOOTER_SIZE, disk_data)
    image._put(4 * 1024 * 1024, VhdFooter.for_fixed_disk(4 * 1024 * 1024).to_bytes())
    return image


@pytest.fixture
def reference_image() -> MemoryImage:
    """Empty 1 MiB fixed VHD"""
    return make_reference('reference.vhd', 1024 * 1024 + FOOTER_SIZE)
