"""
Centralized parsing helpers for numeric CLI values.

MCU IDs, CAN IDs and addresses all go through parse_number so every option
accepts the same notations.
"""

from typing import Optional


def parse_number(value: Optional[str], label: str = "value") -> Optional[int]:
    """
    Parse an integer from string, supporting multiple formats.

    Accepts:
        - Decimal: "4096"
        - Hex with 0x prefix: "0x1000" or "0X1000"
        - Hex with h suffix: "1000h" or "1000H"
        - None or empty for "not given"

    Returns:
        Parsed non-negative integer, or None if value is None or empty.

    Raises:
        ValueError: If value cannot be parsed or is negative.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            number = int(value, 16)
        elif value.lower().endswith("h"):
            number = int(value[:-1], 16)
        else:
            number = int(value)
    except ValueError:
        raise ValueError(
            f"Invalid {label} '{value}'. Use decimal (4096), hex (0x1000), or suffix (1000h)."
        )

    if number < 0:
        raise ValueError(f"Invalid {label} '{value}'. Must not be negative.")
    return number


def parse_bounded(value: Optional[str], maximum: int, label: str = "value") -> Optional[int]:
    """parse_number with an inclusive upper bound."""
    number = parse_number(value, label)
    if number is not None and number > maximum:
        raise ValueError(f"Invalid {label} '{value}'. Must be at most 0x{maximum:X}.")
    return number
