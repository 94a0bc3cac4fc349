"""
Virtual disk footer transplant

A disk image that was truncated to a new size has no valid footer at its
tail. A freshly created empty disk of exactly the desired size does. The
transplant copies that footer onto the truncated image:

1. read the last 512 bytes of the reference image
2. resize the target to the reference length
3. write the footer at the same trailing offset of the target
4. discard the reference

Every step is a blocking call performed in order. Nothing is retried or
rolled back here: a failure leaves the target invalid and keeps the
reference, so the caller can run the whole operation again.
"""

import logging
from typing import Optional, Tuple

from .errors import (
    CleanupError, DiskImageError, FooterFormatError, PreconditionError,
    ReadError, ResizeError, WriteError,
)
from .footer import FOOTER_SIZE, VhdFooter, validate_footer
from .images import DiskImage

logger = logging.getLogger(__name__)


def read_footer_block(image: DiskImage) -> Tuple[int, bytes]:
    """Return the length of an image and its trailing footer block"""
    try:
        length = image.length
    except DiskImageError as e:
        raise ReadError(f"Cannot determine length of reference {image.name}: {e}") from e

    if length < FOOTER_SIZE:
        raise PreconditionError(
            f"Reference {image.name} is {length} bytes, shorter than a {FOOTER_SIZE}-byte footer"
        )

    try:
        block = image.read(length - FOOTER_SIZE, FOOTER_SIZE)
    except DiskImageError as e:
        raise ReadError(f"Cannot read footer of reference {image.name}: {e}") from e

    if len(block) != FOOTER_SIZE:
        raise ReadError(f"Short read of footer from {image.name}: got {len(block)} of {FOOTER_SIZE} bytes")
    return length, block


def transplant_footer(target: DiskImage, reference: DiskImage,
                      expected_length: Optional[int] = None,
                      validate: bool = True,
                      verify: bool = True,
                      discard_reference: bool = True) -> Optional[VhdFooter]:
    """
    Give target the length and trailing footer of reference.

    Args:
        target: image whose data was already copied and truncated
        reference: empty image created at exactly the desired final length
        expected_length: length the caller provisioned the reference at
        validate: require the reference footer to be a valid fixed VHD footer
        verify: read the target tail back after writing it
        discard_reference: delete the reference once the target is verified

    Returns:
        The decoded footer when validate is set, None otherwise
    """
    logger.info(f"🔧 Transplanting footer from {reference.name} to {target.name}")

    length, block = read_footer_block(reference)
    if expected_length is not None and length != expected_length:
        raise PreconditionError(f"Reference {reference.name} is {length} bytes, expected {expected_length}")
    offset = length - FOOTER_SIZE

    footer = None
    if validate:
        try:
            footer = validate_footer(block, length)
        except FooterFormatError as e:
            raise PreconditionError(f"Reference {reference.name} has no usable footer: {e}") from e

    try:
        target.resize(length)
    except DiskImageError as e:
        raise ResizeError(f"Cannot resize {target.name} to {length} bytes: {e}") from e
    logger.info(f"📏 Resized {target.name} to {length} bytes")

    try:
        target.write(offset, block)
    except DiskImageError as e:
        raise WriteError(f"Cannot write footer to {target.name} at {offset}: {e}") from e

    if verify:
        try:
            written = target.read(offset, FOOTER_SIZE)
        except DiskImageError as e:
            raise WriteError(f"Cannot read back footer of {target.name}: {e}") from e
        if written != block:
            raise WriteError(f"Footer read back from {target.name} does not match the reference footer")
    logger.info(f"✅ Footer written to {target.name} at offset {offset}")

    if discard_reference:
        try:
            reference.delete()
        except DiskImageError as e:
            raise CleanupError(
                f"Footer transplanted but reference {reference.name} was not deleted: {e}"
            ) from e

    return footer
