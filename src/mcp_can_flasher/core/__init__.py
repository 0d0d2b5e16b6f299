"""
Core module for the MCP CAN flasher.

This module provides the single source of truth for:
- Pre-flight checks (safety.py)
- Number parsing for IDs and addresses (parsing.py)
- Result objects (results.py)
- Standardized warnings/messages (messages.py)

Workflow actions (flash, read, detect) live in core.actions and are
imported from there directly, since they depend on the protocol layer.
"""

from .parsing import parse_number, parse_bounded
from .results import OperationResult
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    WARNING_REMEDIATIONS,
    codes_of,
)
from .safety import OutputExistsError, check_output_path, check_image_fits

__all__ = [
    # Safety
    "OutputExistsError",
    "check_output_path",
    "check_image_fits",
    # Parsing
    "parse_number",
    "parse_bounded",
    # Results
    "OperationResult",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "WARNING_REMEDIATIONS",
    "codes_of",
]
