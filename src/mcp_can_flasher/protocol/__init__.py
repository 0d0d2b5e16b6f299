"""Bootloader protocol layer - command codec, flash session and CAN transport."""

from .codec import (
    BOOTLOADER_CMD_VERSION,
    CAN_ID_MCU_TO_REMOTE_DEFAULT,
    CAN_ID_REMOTE_TO_MCU_DEFAULT,
    MAX_CHUNK_SIZE,
    Command,
    Packet,
    ProtocolError,
    decode_packet,
    encode_packet,
)
from .can_transport import (
    BusConfig,
    CANTransport,
    CANTransportError,
    CANTimeoutError,
    list_interfaces,
)
from .session import (
    FlashSession,
    SessionConfig,
    SessionOutcome,
    SessionState,
)

__all__ = [
    # Codec
    "BOOTLOADER_CMD_VERSION",
    "CAN_ID_MCU_TO_REMOTE_DEFAULT",
    "CAN_ID_REMOTE_TO_MCU_DEFAULT",
    "MAX_CHUNK_SIZE",
    "Command",
    "Packet",
    "ProtocolError",
    "decode_packet",
    "encode_packet",
    # Transport
    "BusConfig",
    "CANTransport",
    "CANTransportError",
    "CANTimeoutError",
    "list_interfaces",
    # Session
    "FlashSession",
    "SessionConfig",
    "SessionOutcome",
    "SessionState",
]
