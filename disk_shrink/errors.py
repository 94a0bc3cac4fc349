"""Exception types raised by the disk shrink tools"""


class DiskShrinkError(Exception):
    """Base class for all disk shrink errors"""


class DiskImageError(DiskShrinkError):
    """Ranged I/O on a disk image failed"""

    def __init__(self, image_name: str, operation: str, reason: str = ""):
        self.image_name = image_name
        self.operation = operation
        self.reason = reason
        message = f"{operation} failed on image '{image_name}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ImageNotFoundError(DiskImageError):
    """The object backing a disk image no longer exists"""


class FooterFormatError(DiskShrinkError):
    """A 512-byte block is not a valid VHD footer"""


class TransplantError(DiskShrinkError):
    """Base class for footer transplant failures"""


class ReadError(TransplantError):
    """The reference footer could not be read"""


class ResizeError(TransplantError):
    """The target image could not be resized"""


class WriteError(TransplantError):
    """The footer could not be written to the target, or did not read back"""


class PreconditionError(TransplantError):
    """The images do not satisfy the transplant preconditions"""


class CleanupError(TransplantError):
    """The footer was transplanted but the reference image was not discarded"""


class CopyError(DiskShrinkError):
    """Base class for blob copy failures"""


class CopyFailedError(CopyError):
    """The server-side copy ended in a non-success state"""


class CopyTimeoutError(CopyError, TimeoutError):
    """The copy did not finish before its deadline"""


class CopyCancelledError(CopyError):
    """The wait for copy completion was cancelled by the caller"""


class ShrinkError(DiskShrinkError):
    """The shrink workflow cannot proceed"""
