"""
Sparse firmware memory image backed by Intel HEX files.

A MemoryImage is an ordered list of disjoint, contiguous byte ranges keyed by
their start address. ImageCursor walks those ranges chunk by chunk during
flashing and verification.
"""

from __future__ import annotations

import io
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Union

from intelhex import IntelHex, IntelHexError

logger = logging.getLogger(__name__)


class MemoryImageError(Exception):
    """Base exception for memory image operations."""


class HexFileError(MemoryImageError):
    """Raised when Intel HEX input cannot be parsed or written."""


@dataclass(frozen=True)
class MemoryRange:
    """Contiguous run of bytes starting at `start`."""

    start: int
    data: bytes

    @property
    def end(self) -> int:
        """Return end address (exclusive)."""
        return self.start + len(self.data)

    def __len__(self) -> int:
        return len(self.data)


class MemoryImage:
    """
    Ordered collection of disjoint byte ranges.

    Adjacent ranges are kept as given; overlapping ranges are rejected.
    """

    def __init__(self, ranges: Optional[Mapping[int, bytes]] = None) -> None:
        self._ranges: List[MemoryRange] = []
        for start in sorted(ranges or {}):
            data = bytes(ranges[start])
            if start < 0 or start + len(data) > 0x100000000:
                raise MemoryImageError(f"range at 0x{start:X} outside 32-bit address space")
            if not data:
                continue
            if self._ranges and start < self._ranges[-1].end:
                prev = self._ranges[-1]
                raise MemoryImageError(
                    f"range at 0x{start:08X} overlaps 0x{prev.start:08X}-0x{prev.end:08X}"
                )
            self._ranges.append(MemoryRange(start, data))

    # ------------------------------------------------------------------
    # Construction / serialization (Intel HEX)
    # ------------------------------------------------------------------

    @classmethod
    def from_intelhex(cls, ih: IntelHex) -> "MemoryImage":
        """Split an IntelHex object into its contiguous segments."""
        ranges: Dict[int, bytes] = {}
        for start, end in ih.segments():
            ranges[start] = ih.gets(start, end - start)
        return cls(ranges)

    @classmethod
    def from_hex_string(cls, text: str) -> "MemoryImage":
        ih = IntelHex()
        try:
            ih.loadhex(io.StringIO(text))
        except IntelHexError as exc:
            raise HexFileError(f"Invalid Intel HEX data: {exc}") from exc
        return cls.from_intelhex(ih)

    @classmethod
    def from_hex_file(cls, path: Union[str, Path]) -> "MemoryImage":
        """Load an Intel HEX file; '-' reads from stdin."""
        if str(path) == "-":
            return cls.from_hex_string(sys.stdin.read())
        path = Path(path)
        if not path.exists():
            raise HexFileError(f"Hex file not found: {path}")
        image = cls.from_hex_string(path.read_text(encoding="latin-1"))
        logger.debug("Loaded %s: %d range(s), %d bytes", path, len(image), image.total_size)
        return image

    def to_intelhex(self) -> IntelHex:
        ih = IntelHex()
        for rng in self._ranges:
            ih.puts(rng.start, rng.data)
        return ih

    def to_hex_string(self) -> str:
        out = io.StringIO()
        try:
            self.to_intelhex().write_hex_file(out, write_start_addr=False)
        except IntelHexError as exc:
            raise HexFileError(f"Cannot serialize image: {exc}") from exc
        return out.getvalue()

    def write_hex_file(self, path: Union[str, Path]) -> None:
        """Write as Intel HEX; '-' writes to stdout."""
        text = self.to_hex_string()
        if str(path) == "-":
            sys.stdout.write(text)
            sys.stdout.flush()
            return
        Path(path).write_text(text, encoding="latin-1")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def ranges(self) -> List[MemoryRange]:
        return list(self._ranges)

    @property
    def total_size(self) -> int:
        return sum(len(r) for r in self._ranges)

    @property
    def min_address(self) -> Optional[int]:
        return self._ranges[0].start if self._ranges else None

    @property
    def end_address(self) -> Optional[int]:
        """Highest address + 1, or None for an empty image."""
        return self._ranges[-1].end if self._ranges else None

    def byte_at(self, address: int) -> Optional[int]:
        """Byte stored at address, or None inside a gap."""
        for rng in self._ranges:
            if rng.start <= address < rng.end:
                return rng.data[address - rng.start]
        return None

    def __len__(self) -> int:
        return len(self._ranges)

    def __iter__(self) -> Iterator[MemoryRange]:
        return iter(self._ranges)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MemoryImage):
            return NotImplemented
        return self._ranges == other._ranges

    def __repr__(self) -> str:
        parts = ", ".join(f"0x{r.start:08X}+{len(r)}" for r in self._ranges)
        return f"MemoryImage([{parts}])"


class ImageCursor:
    """
    Traversal position within a MemoryImage.

    Tracks the active range index and the byte offset inside it. Whenever a
    range is active, `address == active.start + offset`.
    """

    def __init__(self, image: MemoryImage) -> None:
        self._ranges = image.ranges
        self.index = -1
        self.offset = 0

    def reset(self) -> None:
        """Rewind to before the first range."""
        self.index = -1
        self.offset = 0

    @property
    def active(self) -> Optional[MemoryRange]:
        if 0 <= self.index < len(self._ranges):
            return self._ranges[self.index]
        return None

    @property
    def address(self) -> int:
        rng = self.active
        if rng is None:
            return 0
        return rng.start + self.offset

    @property
    def exhausted(self) -> bool:
        """True when there is no active range or its bytes are used up."""
        rng = self.active
        return rng is None or self.offset >= len(rng)

    def next_range(self) -> bool:
        """Move to the next range at offset 0. Returns False when none remain."""
        if self.index + 1 >= len(self._ranges):
            self.index = len(self._ranges)
            self.offset = 0
            return False
        self.index += 1
        self.offset = 0
        return True

    def advance(self, count: int) -> None:
        self.offset += count

    def chunk(self, size: int) -> bytes:
        """Up to `size` bytes from the cursor, fewer if the range ends sooner."""
        rng = self.active
        if rng is None:
            return b""
        return rng.data[self.offset : self.offset + size]

    def expected(self, position: int) -> Optional[int]:
        """Image byte `position` bytes past the cursor, None past the range end."""
        rng = self.active
        if rng is None:
            return None
        idx = self.offset + position
        if idx >= len(rng):
            return None
        return rng.data[idx]
