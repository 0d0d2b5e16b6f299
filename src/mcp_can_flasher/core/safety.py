"""
Pre-flight checks run before any frame is put on the bus.
"""

from pathlib import Path
from typing import Optional, Union

from mcp_can_flasher.memory_image import MemoryImage
from mcp_can_flasher.models import PartConfig


class OutputExistsError(Exception):
    """Raised when a read would overwrite an existing file."""


def check_output_path(path: Union[str, Path]) -> None:
    """
    Refuse to read flash into an existing file.

    '-' (stdout) is always accepted.

    Raises:
        OutputExistsError: If the file already exists.
    """
    if str(path) == "-":
        return
    if Path(path).exists():
        raise OutputExistsError(f"Output file {path} already exists")


def check_image_fits(image: MemoryImage, part: Optional[PartConfig]) -> Optional[str]:
    """Return a problem description if the image exceeds the part's flash, else None."""
    if part is None or image.end_address is None:
        return None
    if part.fits(image.end_address):
        return None
    return (
        f"Image ends at 0x{image.end_address:X} but {part.name} "
        f"has only 0x{part.flash_size:X} bytes of flash"
    )
