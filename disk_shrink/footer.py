"""
VHD footer codec

Fixed VHD images end with a 512-byte footer that describes the disk size,
its CHS geometry and its identity. All fields are big-endian:

  offset  size  field
       0     8  cookie ("conectix")
       8     4  features
      12     4  file format version
      16     8  data offset (0xFFFFFFFFFFFFFFFF for fixed disks)
      24     4  timestamp (seconds since 2000-01-01 00:00:00 UTC)
      28     4  creator application
      32     4  creator version
      36     4  creator host OS
      40     8  original size
      48     8  current size
      56     4  disk geometry (cylinders:2, heads:1, sectors per track:1)
      60     4  disk type
      64     4  checksum
      68    16  unique id
      84     1  saved state
      85   427  reserved (zero)
"""

import struct
import time
import uuid
from dataclasses import dataclass, field
from typing import Tuple

from .errors import FooterFormatError

FOOTER_SIZE = 512
SECTOR_SIZE = 512

COOKIE = b'conectix'
FEATURES_RESERVED = 0x00000002
FORMAT_VERSION = 0x00010000
FIXED_DATA_OFFSET = 0xFFFFFFFFFFFFFFFF
VHD_EPOCH = 946684800  # 2000-01-01 00:00:00 UTC

DISK_TYPE_FIXED = 2
DISK_TYPE_DYNAMIC = 3
DISK_TYPE_DIFFERENCING = 4

DISK_TYPE_NAMES = {
    0: 'none',
    DISK_TYPE_FIXED: 'fixed',
    DISK_TYPE_DYNAMIC: 'dynamic',
    DISK_TYPE_DIFFERENCING: 'differencing',
}

_LAYOUT = struct.Struct('>8sIIQI4sI4sQQHBBII16sB')
_CHECKSUM_OFFSET = 64


def compute_checksum(block: bytes) -> int:
    """One's complement of the byte sum, with the checksum field taken as zero"""
    data = bytearray(block)
    data[_CHECKSUM_OFFSET:_CHECKSUM_OFFSET + 4] = b'\x00\x00\x00\x00'
    return ~sum(data) & 0xFFFFFFFF


def chs_geometry(disk_size: int) -> Tuple[int, int, int]:
    """Return (cylinders, heads, sectors per track) for a disk of disk_size bytes"""
    total_sectors = disk_size // SECTOR_SIZE
    if total_sectors > 65535 * 16 * 255:
        total_sectors = 65535 * 16 * 255

    if total_sectors >= 65535 * 16 * 63:
        sectors_per_track = 255
        heads = 16
        cylinder_times_heads = total_sectors // sectors_per_track
    else:
        sectors_per_track = 17
        cylinder_times_heads = total_sectors // sectors_per_track
        heads = (cylinder_times_heads + 1023) // 1024
        if heads < 4:
            heads = 4
        if cylinder_times_heads >= heads * 1024 or heads > 16:
            sectors_per_track = 31
            heads = 16
            cylinder_times_heads = total_sectors // sectors_per_track
        if cylinder_times_heads >= heads * 1024:
            sectors_per_track = 63
            heads = 16
            cylinder_times_heads = total_sectors // sectors_per_track

    return cylinder_times_heads // heads, heads, sectors_per_track


@dataclass
class VhdFooter:
    """Decoded VHD footer"""
    original_size: int
    current_size: int
    cylinders: int
    heads: int
    sectors_per_track: int
    disk_type: int = DISK_TYPE_FIXED
    unique_id: bytes = field(default_factory=lambda: uuid.uuid4().bytes)
    timestamp: int = 0
    creator_application: bytes = b'dsk '
    creator_version: int = 0x00010000
    creator_host_os: bytes = b'Wi2k'
    data_offset: int = FIXED_DATA_OFFSET
    features: int = FEATURES_RESERVED
    format_version: int = FORMAT_VERSION
    saved_state: int = 0
    checksum: int = 0
    cookie: bytes = COOKIE

    @classmethod
    def for_fixed_disk(cls, disk_size: int) -> 'VhdFooter':
        """Build the footer of a fixed VHD holding disk_size bytes of data"""
        if disk_size < 0 or disk_size % SECTOR_SIZE:
            raise FooterFormatError(f"Disk size {disk_size} is not a non-negative multiple of {SECTOR_SIZE}")
        cylinders, heads, sectors_per_track = chs_geometry(disk_size)
        footer = cls(
            original_size=disk_size,
            current_size=disk_size,
            cylinders=cylinders,
            heads=heads,
            sectors_per_track=sectors_per_track,
            timestamp=max(0, int(time.time()) - VHD_EPOCH),
        )
        footer.checksum = compute_checksum(footer._pack())
        return footer

    @classmethod
    def parse(cls, block: bytes) -> 'VhdFooter':
        """Decode a 512-byte footer block"""
        if len(block) != FOOTER_SIZE:
            raise FooterFormatError(f"Footer must be {FOOTER_SIZE} bytes, got {len(block)}")

        (cookie, features, format_version, data_offset, timestamp,
         creator_application, creator_version, creator_host_os,
         original_size, current_size,
         cylinders, heads, sectors_per_track,
         disk_type, checksum, unique_id, saved_state) = _LAYOUT.unpack_from(block)

        if cookie != COOKIE:
            raise FooterFormatError(f"Bad footer cookie {cookie!r}, expected {COOKIE!r}")

        return cls(
            original_size=original_size,
            current_size=current_size,
            cylinders=cylinders,
            heads=heads,
            sectors_per_track=sectors_per_track,
            disk_type=disk_type,
            unique_id=unique_id,
            timestamp=timestamp,
            creator_application=creator_application,
            creator_version=creator_version,
            creator_host_os=creator_host_os,
            data_offset=data_offset,
            features=features,
            format_version=format_version,
            saved_state=saved_state,
            checksum=checksum,
            cookie=cookie,
        )

    def _pack(self) -> bytes:
        header = _LAYOUT.pack(
            self.cookie, self.features, self.format_version, self.data_offset,
            self.timestamp, self.creator_application, self.creator_version,
            self.creator_host_os, self.original_size, self.current_size,
            self.cylinders, self.heads, self.sectors_per_track,
            self.disk_type, self.checksum, self.unique_id, self.saved_state,
        )
        return header + bytes(FOOTER_SIZE - len(header))

    def to_bytes(self) -> bytes:
        """Encode the footer, filling in a fresh checksum"""
        self.checksum = compute_checksum(self._pack())
        return self._pack()

    def verify_checksum(self) -> bool:
        return compute_checksum(self._pack()) == self.checksum

    @property
    def disk_type_name(self) -> str:
        return DISK_TYPE_NAMES.get(self.disk_type, f"unknown ({self.disk_type})")

    @property
    def unique_id_str(self) -> str:
        return str(uuid.UUID(bytes=self.unique_id))

    def describe(self) -> dict:
        """Human readable summary, as printed by the inspect command"""
        return {
            'version': f"{self.format_version >> 16}.{self.format_version & 0xFFFF}",
            'type': self.disk_type_name,
            'current_size': self.current_size,
            'original_size': self.original_size,
            'geometry': f"{self.cylinders}/{self.heads}/{self.sectors_per_track}",
            'creator': self.creator_application.decode('ascii', errors='replace'),
            'created': time.strftime('%Y-%m-%d %H:%M:%S', time.gmtime(VHD_EPOCH + self.timestamp)),
            'unique_id': self.unique_id_str,
            'checksum_valid': self.verify_checksum(),
        }


def validate_footer(block: bytes, image_length: int) -> VhdFooter:
    """Check that block is a valid fixed-disk footer for an image of image_length bytes"""
    footer = VhdFooter.parse(block)

    if not footer.verify_checksum():
        raise FooterFormatError(f"Footer checksum mismatch (stored 0x{footer.checksum:08x})")

    if footer.disk_type != DISK_TYPE_FIXED:
        raise FooterFormatError(f"Only fixed disks are supported, footer describes a {footer.disk_type_name} disk")

    expected_size = image_length - FOOTER_SIZE
    if footer.current_size != expected_size:
        raise FooterFormatError(
            f"Footer current size {footer.current_size} does not match image data size {expected_size}"
        )

    return footer
