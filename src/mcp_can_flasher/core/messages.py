"""
Standardized warning and message system for the CAN flasher.

Provides structured warning items with stable codes so the session, the
workflow actions and the CLI report protocol problems consistently.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Handshake
    W_SIGNATURE_MISMATCH = "W_SIGNATURE_MISMATCH"
    W_VERSION_MISMATCH = "W_VERSION_MISMATCH"
    W_VERSION_FORCED = "W_VERSION_FORCED"
    W_PART_UNKNOWN = "W_PART_UNKNOWN"

    # Transfer
    W_ADDRESS_ERROR = "W_ADDRESS_ERROR"
    W_DATA_ERROR = "W_DATA_ERROR"
    W_READ_DESYNC = "W_READ_DESYNC"
    W_VERIFY_MISMATCH = "W_VERIFY_MISMATCH"
    W_VERIFY_END_OF_FLASH = "W_VERIFY_END_OF_FLASH"
    W_UNEXPECTED_COMMAND = "W_UNEXPECTED_COMMAND"

    # Driver
    W_STALLED = "W_STALLED"
    W_IMAGE_TOO_LARGE = "W_IMAGE_TOO_LARGE"

    # Generic
    W_UNKNOWN = "W_UNKNOWN"


WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_SIGNATURE_MISMATCH:
        "Check --partno. Run 'detect' to see the signature the bootloader announces.",
    WarningCode.W_VERSION_MISMATCH:
        "Update the flash tool or bootloader, or pass --force to flash anyway.",
    WarningCode.W_VERSION_FORCED:
        "Flashing with a mismatched command set may produce a broken result.",
    WarningCode.W_PART_UNKNOWN:
        "Check supported parts with the 'list-parts' command.",
    WarningCode.W_ADDRESS_ERROR:
        "The hex file may not be built for this MCU type.",
    WarningCode.W_DATA_ERROR:
        "Maybe there are CAN bus issues? Check termination and bitrate.",
    WarningCode.W_READ_DESYNC:
        "Frames were lost or reordered. Retry the operation.",
    WarningCode.W_VERIFY_MISMATCH:
        "Flash content differs from the hex file. Re-flash, optionally with --erase.",
    WarningCode.W_VERIFY_END_OF_FLASH:
        "The image extends beyond the flash area available to the application.",
    WarningCode.W_UNEXPECTED_COMMAND:
        "Another tool may be talking to the same bootloader.",
    WarningCode.W_STALLED:
        "No response from the bootloader. Reset the MCU and retry.",
    WarningCode.W_IMAGE_TOO_LARGE:
        "The image does not fit into the part's flash. Check --partno and the hex file.",
    WarningCode.W_UNKNOWN:
        "Check logs for more details.",
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        """Set default remediation if not provided."""
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create a WARN-level warning."""
        return cls(MessageLevel.WARN, code, title, detail)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create an ERROR-level warning."""
        return cls(MessageLevel.ERROR, code, title, detail)


def codes_of(items: List[WarningItem]) -> List[WarningCode]:
    """Return the codes of a warning list, in order."""
    return [item.code for item in items]
