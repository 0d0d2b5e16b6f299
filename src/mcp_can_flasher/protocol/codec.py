"""
Bootloader command codec.

Every bootloader message is a CAN frame with exactly 8 data bytes:

    byte 0-1  MCU ID, big-endian
    byte 2    command code
    byte 3    bits 7-5: number of data bytes (0-4)
              bits 4-0: low 5 bits of the flash address
    byte 4-7  address (u32 big-endian), up to 4 data bytes,
              or 3-byte device signature + 1 byte (version / reserved)

This module only translates between structured packets and raw payloads.
It holds no session state.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Tuple

import can


BOOTLOADER_CMD_VERSION = 0x01

PAYLOAD_SIZE = 8
MAX_CHUNK_SIZE = 4
ADDRESS_LOW_MASK = 0b00011111

CAN_ID_MCU_TO_REMOTE_DEFAULT = 0x1FFFFF01
CAN_ID_REMOTE_TO_MCU_DEFAULT = 0x1FFFFF02
CAN_EXT_ID_MAX = 0x1FFFFFFF

BYTE_MCU_ID_MSB = 0
BYTE_MCU_ID_LSB = 1
BYTE_CMD = 2
BYTE_LEN_AND_ADDR = 3


class ProtocolError(Exception):
    """Raised when a packet cannot be encoded or decoded."""


class Command(IntEnum):
    """Bootloader command codes. Decoding is by exact byte match."""
    ERROR = 0b00000001                     # mcu -> remote
    BOOTLOADER_START = 0b00000010          # mcu -> remote
    FLASH_INIT = 0b00000110                # remote -> mcu
    FLASH_READY = 0b00000100               # mcu -> remote
    FLASH_SET_ADDRESS = 0b00001010         # remote -> mcu
    FLASH_ADDRESS_ERROR = 0b00001011       # mcu -> remote
    FLASH_DATA = 0b00001000                # remote -> mcu
    FLASH_DATA_ERROR = 0b00001101          # mcu -> remote
    FLASH_DONE = 0b00010000                # remote -> mcu
    FLASH_DONE_VERIFY = 0b01010000         # remote <-> mcu
    FLASH_ERASE = 0b00100000               # remote -> mcu
    FLASH_READ = 0b01000000                # remote -> mcu
    FLASH_READ_DATA = 0b01001000           # mcu -> remote
    FLASH_READ_ADDRESS_ERROR = 0b01001011  # mcu -> remote
    START_APP = 0b10000000                 # mcu <-> remote


_COMMANDS_BY_CODE = {cmd.value: cmd for cmd in Command}


def command_name(code: int) -> str:
    """Readable name for a raw command byte, known or not."""
    cmd = _COMMANDS_BY_CODE.get(code)
    if cmd is None:
        return f"0x{code:02X}"
    return cmd.name


def pack_length_and_address(length: int, address: int) -> int:
    """Pack a byte count (0-4) and the low 5 address bits into one byte."""
    if not (0 <= length <= MAX_CHUNK_SIZE):
        raise ProtocolError(f"data length must be 0..{MAX_CHUNK_SIZE}, got {length}")
    return ((length & 0b111) << 5) | (address & ADDRESS_LOW_MASK)


def unpack_length_and_address(value: int) -> Tuple[int, int]:
    """Return (length, address_low) from the packed byte."""
    return (value >> 5) & 0b111, value & ADDRESS_LOW_MASK


@dataclass(frozen=True)
class Packet:
    """Decoded bootloader message."""

    mcu_id: int
    code: int
    length: int
    address_low: int
    payload: bytes

    @property
    def command(self) -> Optional[Command]:
        """Known command, or None for an unrecognized code."""
        return _COMMANDS_BY_CODE.get(self.code)

    @property
    def name(self) -> str:
        return command_name(self.code)

    @property
    def address(self) -> int:
        """Payload interpreted as a 32-bit big-endian address."""
        return int.from_bytes(self.payload, "big")

    @property
    def data(self) -> bytes:
        """Payload bytes covered by the packed length field."""
        return self.payload[: min(self.length, MAX_CHUNK_SIZE)]

    @property
    def signature(self) -> bytes:
        return self.payload[:3]

    @property
    def version(self) -> int:
        """Protocol version byte of a BOOTLOADER_START announcement."""
        return self.payload[3]


def encode_packet(
    mcu_id: int,
    command: int,
    *,
    length: int = 0,
    address: int = 0,
    payload: bytes = b"",
) -> bytes:
    """
    Build an 8-byte bootloader payload.

    Unused payload bytes are zero-filled.
    """
    if not (0 <= mcu_id <= 0xFFFF):
        raise ProtocolError(f"MCU ID must fit in uint16, got 0x{mcu_id:X}")
    if not (0 <= int(command) <= 0xFF):
        raise ProtocolError("command must fit in uint8")
    if payload is None:
        payload = b""
    if len(payload) > 4:
        raise ProtocolError(f"payload too large: {len(payload)} bytes (max 4)")

    out = bytearray(PAYLOAD_SIZE)
    out[BYTE_MCU_ID_MSB] = (mcu_id >> 8) & 0xFF
    out[BYTE_MCU_ID_LSB] = mcu_id & 0xFF
    out[BYTE_CMD] = int(command)
    out[BYTE_LEN_AND_ADDR] = pack_length_and_address(length, address)
    out[4 : 4 + len(payload)] = payload
    return bytes(out)


def decode_packet(data: bytes) -> Packet:
    """Parse an 8-byte bootloader payload. Unknown command codes decode too."""
    if len(data) != PAYLOAD_SIZE:
        raise ProtocolError(f"payload must be {PAYLOAD_SIZE} bytes, got {len(data)}")
    data = bytes(data)
    length, address_low = unpack_length_and_address(data[BYTE_LEN_AND_ADDR])
    return Packet(
        mcu_id=(data[BYTE_MCU_ID_MSB] << 8) | data[BYTE_MCU_ID_LSB],
        code=data[BYTE_CMD],
        length=length,
        address_low=address_low,
        payload=data[4:8],
    )


# ----------------------------------------------------------------------------
# Remote -> MCU command builders
# ----------------------------------------------------------------------------

def _address_bytes(address: int) -> bytes:
    if not (0 <= address <= 0xFFFFFFFF):
        raise ProtocolError(f"address must fit in uint32, got 0x{address:X}")
    return address.to_bytes(4, "big")


def build_flash_init(mcu_id: int, signature: bytes) -> bytes:
    """FLASH_INIT carrying the expected 3-byte signature plus a reserved byte."""
    if len(signature) != 3:
        raise ProtocolError("device signature must be exactly 3 bytes")
    return encode_packet(mcu_id, Command.FLASH_INIT, payload=bytes(signature) + b"\x00")


def build_set_address(mcu_id: int, address: int) -> bytes:
    return encode_packet(mcu_id, Command.FLASH_SET_ADDRESS, payload=_address_bytes(address))


def build_flash_data(mcu_id: int, address: int, chunk: bytes) -> bytes:
    """FLASH_DATA with up to 4 bytes destined for `address`."""
    if len(chunk) > MAX_CHUNK_SIZE:
        raise ProtocolError(f"chunk too large: {len(chunk)} bytes (max {MAX_CHUNK_SIZE})")
    return encode_packet(
        mcu_id,
        Command.FLASH_DATA,
        length=len(chunk),
        address=address,
        payload=bytes(chunk),
    )


def build_flash_read(mcu_id: int, address: int) -> bytes:
    return encode_packet(mcu_id, Command.FLASH_READ, payload=_address_bytes(address))


def build_command(mcu_id: int, command: Command) -> bytes:
    """Commands without arguments: FLASH_ERASE, FLASH_DONE, FLASH_DONE_VERIFY, START_APP."""
    return encode_packet(mcu_id, command)


def build_message(arbitration_id: int, payload: bytes) -> can.Message:
    """Wrap a payload into an extended-ID python-can message."""
    if not (0 <= arbitration_id <= CAN_EXT_ID_MAX):
        raise ProtocolError(f"CAN ID must fit in 29 bits, got 0x{arbitration_id:X}")
    return can.Message(
        arbitration_id=arbitration_id,
        data=payload,
        is_extended_id=True,
        is_remote_frame=False,
    )
