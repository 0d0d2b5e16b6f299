"""
Part registry for AVR microcontrollers supported by the CAN bootloader.

Provides a single source of truth for:
- Part names and their avrdude-style aliases
- Device signatures announced by the bootloader
- Flash sizes used to sanity-check firmware images

Usage:
    from mcp_can_flasher.models import (
        list_parts, get_part, get_signature, detect_part
    )

    # List all known parts
    parts = list_parts()

    # Get config for a specific part (aliases are accepted)
    config = get_part("m328p")

    # Signature the bootloader must announce for a part
    signature = get_signature("atmega328p")

    # Reverse lookup from an announced signature
    config = detect_part(b"\\x1E\\x95\\x0F")
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple


SIGNATURE_LENGTH = 3
UNKNOWN_SIGNATURE = bytes(SIGNATURE_LENGTH)


@dataclass(frozen=True)
class PartConfig:
    """
    Configuration for a single microcontroller part.

    The signature is the 3-byte value the bootloader sends in its
    BOOTLOADER_START announcement and expects back in FLASH_INIT.
    """
    name: str
    signature: bytes
    flash_size: int
    aliases: Tuple[str, ...] = field(default_factory=tuple)
    vendor: str = "Atmel"
    notes: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def signature_hex(self) -> str:
        """Return signature as spaced hex string (e.g. '1E 95 0F')."""
        return " ".join(f"{b:02X}" for b in self.signature)

    def fits(self, end_address: int) -> bool:
        """Check whether an image ending at end_address (exclusive) fits into flash."""
        return end_address <= self.flash_size


# ============================================================================
# PART REGISTRY - All known parts
# ============================================================================

_PART_REGISTRY: Dict[str, PartConfig] = {}
_ALIASES: Dict[str, str] = {}


def _register_part(config: PartConfig) -> None:
    """Register a part configuration and all of its aliases."""
    _PART_REGISTRY[config.name] = config
    _ALIASES[config.name] = config.name
    for alias in config.aliases:
        _ALIASES[alias] = config.name


def _avr_aliases(suffix: str) -> Tuple[str, ...]:
    """avrdude style short names: m328p, mega328p."""
    return (f"m{suffix}", f"mega{suffix}")


def _init_registry() -> None:
    """Initialize the registry with parts the bootloader is built for."""
    _register_part(PartConfig(
        name="atmega32",
        signature=bytes([0x1E, 0x95, 0x02]),
        flash_size=32 * 1024,
        aliases=_avr_aliases("32"),
    ))
    _register_part(PartConfig(
        name="atmega328",
        signature=bytes([0x1E, 0x95, 0x14]),
        flash_size=32 * 1024,
        aliases=_avr_aliases("328"),
    ))
    _register_part(PartConfig(
        name="atmega328p",
        signature=bytes([0x1E, 0x95, 0x0F]),
        flash_size=32 * 1024,
        aliases=_avr_aliases("328p"),
        notes=("Arduino Uno / Nano class boards",),
    ))
    _register_part(PartConfig(
        name="atmega64",
        signature=bytes([0x1E, 0x96, 0x02]),
        flash_size=64 * 1024,
        aliases=_avr_aliases("64"),
    ))
    _register_part(PartConfig(
        name="atmega644p",
        signature=bytes([0x1E, 0x96, 0x0A]),
        flash_size=64 * 1024,
        aliases=_avr_aliases("644p"),
    ))
    _register_part(PartConfig(
        name="atmega128",
        signature=bytes([0x1E, 0x97, 0x02]),
        flash_size=128 * 1024,
        aliases=_avr_aliases("128"),
    ))
    _register_part(PartConfig(
        name="atmega1284p",
        signature=bytes([0x1E, 0x97, 0x05]),
        flash_size=128 * 1024,
        aliases=_avr_aliases("1284p"),
    ))
    _register_part(PartConfig(
        name="atmega2560",
        signature=bytes([0x1E, 0x98, 0x01]),
        flash_size=256 * 1024,
        aliases=_avr_aliases("2560"),
        notes=("Addresses above 0xFFFF use the full 32-bit address field",),
    ))


_init_registry()


# ============================================================================
# PUBLIC API
# ============================================================================

def list_parts() -> List[str]:
    """
    List all registered part names.

    Returns:
        Sorted list of canonical part names.
    """
    return sorted(_PART_REGISTRY.keys())


def get_part(name: str) -> Optional[PartConfig]:
    """
    Get configuration for a part.

    Args:
        name: Part name or alias (case-insensitive)

    Returns:
        PartConfig or None if not found.
    """
    if not name:
        return None
    canonical = _ALIASES.get(name.strip().lower())
    if canonical is None:
        return None
    return _PART_REGISTRY[canonical]


def get_signature(name: str) -> bytes:
    """
    Get the 3-byte device signature for a part.

    Unknown names yield an all-zero signature, which no bootloader announces,
    so validation against it always fails.
    """
    config = get_part(name)
    if config is None:
        return UNKNOWN_SIGNATURE
    return config.signature


def detect_part(signature: bytes) -> Optional[PartConfig]:
    """Find the part that announces the given signature."""
    signature = bytes(signature[:SIGNATURE_LENGTH])
    for config in _PART_REGISTRY.values():
        if config.signature == signature:
            return config
    return None
