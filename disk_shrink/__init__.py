"""Shrink Azure OS disks by transplanting VHD footers"""

__version__ = '0.1.0'

from .errors import (  # noqa: F401
    CleanupError, CopyCancelledError, CopyFailedError, CopyTimeoutError,
    DiskImageError, DiskShrinkError, FooterFormatError, ImageNotFoundError,
    PreconditionError, ReadError, ResizeError, ShrinkError, TransplantError,
    WriteError,
)
from .footer import FOOTER_SIZE, VhdFooter, validate_footer  # noqa: F401
from .images import DiskImage, FileImage, PageBlobImage  # noqa: F401
from .transplant import transplant_footer  # noqa: F401
