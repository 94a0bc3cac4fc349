"""
Disk images addressed through ranged I/O

A DiskImage is a byte sequence of known length that supports ranged reads,
ranged writes, resizing and deletion. Page blobs in Azure storage and local
files are supported.
"""

import logging
import os
from abc import ABC, abstractmethod

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobClient

from .errors import DiskImageError, ImageNotFoundError
from .footer import SECTOR_SIZE

logger = logging.getLogger(__name__)

# Put Page accepts at most 4 MiB per call
MAX_PAGE_WRITE = 4 * 1024 * 1024


class DiskImage(ABC):
    """Randomly addressable disk image"""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def length(self) -> int:
        ...

    @abstractmethod
    def read(self, offset: int, size: int) -> bytes:
        ...

    @abstractmethod
    def write(self, offset: int, data: bytes):
        ...

    @abstractmethod
    def resize(self, length: int):
        ...

    @abstractmethod
    def delete(self):
        ...

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r})"


class PageBlobImage(DiskImage):
    """Disk image stored as an Azure page blob"""

    def __init__(self, blob_client: BlobClient):
        self.blob_client = blob_client

    @classmethod
    def from_url(cls, blob_url: str, credential=None) -> 'PageBlobImage':
        """Open a page blob from a (possibly SAS-signed) URL"""
        return cls(BlobClient.from_blob_url(blob_url, credential=credential))

    @property
    def name(self) -> str:
        return f"{self.blob_client.container_name}/{self.blob_client.blob_name}"

    def _fail(self, operation: str, error: AzureError):
        if isinstance(error, ResourceNotFoundError):
            raise ImageNotFoundError(self.name, operation, "blob not found") from error
        raise DiskImageError(self.name, operation, str(error)) from error

    @property
    def length(self) -> int:
        try:
            return self.blob_client.get_blob_properties().size
        except AzureError as e:
            self._fail('get properties', e)

    def read(self, offset: int, size: int) -> bytes:
        try:
            return self.blob_client.download_blob(offset=offset, length=size).readall()
        except AzureError as e:
            self._fail(f"read {size} bytes at {offset}", e)

    def write(self, offset: int, data: bytes):
        if offset % SECTOR_SIZE or len(data) % SECTOR_SIZE:
            raise DiskImageError(self.name, 'write', f"page writes must be {SECTOR_SIZE}-byte aligned")
        if len(data) > MAX_PAGE_WRITE:
            raise DiskImageError(self.name, 'write', f"page writes are limited to {MAX_PAGE_WRITE} bytes")
        try:
            self.blob_client.upload_page(data, offset=offset, length=len(data))
        except AzureError as e:
            self._fail(f"write {len(data)} bytes at {offset}", e)

    def resize(self, length: int):
        if length % SECTOR_SIZE:
            raise DiskImageError(self.name, 'resize', f"page blob size must be a multiple of {SECTOR_SIZE}")
        try:
            self.blob_client.resize_blob(length)
        except AzureError as e:
            self._fail(f"resize to {length}", e)

    def delete(self):
        try:
            self.blob_client.delete_blob(delete_snapshots='include')
        except AzureError as e:
            self._fail('delete', e)
        logger.info(f"🗑️ Deleted blob {self.name}")


class FileImage(DiskImage):
    """Disk image stored in a local file"""

    def __init__(self, path: str):
        self.path = path

    @property
    def name(self) -> str:
        return self.path

    def _fail(self, operation: str, error: OSError):
        if isinstance(error, FileNotFoundError):
            raise ImageNotFoundError(self.name, operation, "file not found") from error
        raise DiskImageError(self.name, operation, str(error)) from error

    @property
    def length(self) -> int:
        try:
            return os.path.getsize(self.path)
        except OSError as e:
            self._fail('stat', e)

    def read(self, offset: int, size: int) -> bytes:
        try:
            with open(self.path, 'rb') as f:
                f.seek(offset)
                return f.read(size)
        except OSError as e:
            self._fail(f"read {size} bytes at {offset}", e)

    def write(self, offset: int, data: bytes):
        try:
            with open(self.path, 'r+b') as f:
                f.seek(offset)
                f.write(data)
        except OSError as e:
            self._fail(f"write {len(data)} bytes at {offset}", e)

    def resize(self, length: int):
        try:
            os.truncate(self.path, length)
        except OSError as e:
            self._fail(f"resize to {length}", e)

    def delete(self):
        try:
            os.remove(self.path)
        except OSError as e:
            self._fail('delete', e)
        logger.info(f"🗑️ Deleted file {self.name}")


def open_image(location: str) -> DiskImage:
    """Open a blob URL or a local path as a disk image"""
    if location.startswith(('https://', 'http://')):
        return PageBlobImage.from_url(location)
    return FileImage(location)
