"""
MCP CAN Flasher - remote flash tool for AVR MCUs running MCP-CAN-Boot

Flash, verify and read firmware over a CAN bus using python-can.
"""

__version__ = "0.1.0"

from mcp_can_flasher.memory_image import MemoryImage, ImageCursor
from mcp_can_flasher.protocol import (
    BusConfig,
    CANTransport,
    FlashSession,
    SessionConfig,
    SessionOutcome,
)

__all__ = [
    "MemoryImage",
    "ImageCursor",
    "BusConfig",
    "CANTransport",
    "FlashSession",
    "SessionConfig",
    "SessionOutcome",
    "__version__",
]
