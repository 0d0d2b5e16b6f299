"""
Part registry for CAN bootloader targets.

Provides a unified layer for part lookup, signatures and flash sizes.
"""

from .registry import (
    PartConfig,
    SIGNATURE_LENGTH,
    UNKNOWN_SIGNATURE,
    list_parts,
    get_part,
    get_signature,
    detect_part,
)

__all__ = [
    "PartConfig",
    "SIGNATURE_LENGTH",
    "UNKNOWN_SIGNATURE",
    "list_parts",
    "get_part",
    "get_signature",
    "detect_part",
]
