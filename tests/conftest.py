"""Shared fixtures: a simulated MCP-CAN-Boot device and an in-memory transport."""

from collections import deque
from typing import List, Optional

import can
import pytest

from mcp_can_flasher.protocol.codec import (
    ADDRESS_LOW_MASK,
    BOOTLOADER_CMD_VERSION,
    CAN_ID_MCU_TO_REMOTE_DEFAULT,
    CAN_ID_REMOTE_TO_MCU_DEFAULT,
    Command,
    Packet,
    build_message,
    decode_packet,
    encode_packet,
)

MCU_ID = 0x0042
SIG_328P = b"\x1E\x95\x0F"


def mcu_message(
    command: int,
    *,
    length: int = 0,
    address: int = 0,
    payload: bytes = b"",
    mcu_id: int = MCU_ID,
    can_id: int = CAN_ID_MCU_TO_REMOTE_DEFAULT,
) -> can.Message:
    """Frame as the MCU would send it."""
    return build_message(
        can_id,
        encode_packet(mcu_id, command, length=length, address=address, payload=payload),
    )


def ready_message(address: int, length: int = 0, mcu_id: int = MCU_ID) -> can.Message:
    return mcu_message(
        Command.FLASH_READY,
        length=length,
        address=address,
        payload=address.to_bytes(4, "big"),
        mcu_id=mcu_id,
    )


class FakeBootloader:
    """
    Behavioural model of the bootloader running on the MCU.

    Flash starts erased (0xFF). `corrupt` maps addresses to values stored
    instead of whatever is written there.
    """

    def __init__(
        self,
        mcu_id: int = MCU_ID,
        signature: bytes = SIG_328P,
        version: int = BOOTLOADER_CMD_VERSION,
        flash_size: int = 0x400,
        corrupt: Optional[dict] = None,
    ) -> None:
        self.mcu_id = mcu_id
        self.signature = signature
        self.version = version
        self.flash = bytearray(b"\xFF" * flash_size)
        self.flash_addr = 0
        self.corrupt = corrupt or {}
        self.received: List[Packet] = []
        self.app_started = False
        self.erased = False

    def announce(self) -> can.Message:
        return mcu_message(
            Command.BOOTLOADER_START,
            payload=self.signature + bytes([self.version]),
            mcu_id=self.mcu_id,
        )

    def _msg(self, command: int, **kwargs) -> can.Message:
        return mcu_message(command, mcu_id=self.mcu_id, **kwargs)

    def respond(self, msg: can.Message) -> List[can.Message]:
        if msg.arbitration_id != CAN_ID_REMOTE_TO_MCU_DEFAULT:
            return []
        packet = decode_packet(bytes(msg.data))
        if packet.mcu_id != self.mcu_id:
            return []
        self.received.append(packet)
        cmd = packet.command
        size = len(self.flash)

        if cmd is Command.FLASH_INIT:
            if packet.signature != self.signature:
                return []
            self.flash_addr = 0
            return [ready_message(0, mcu_id=self.mcu_id)]

        if cmd is Command.FLASH_ERASE:
            self.flash[:] = b"\xFF" * size
            self.flash_addr = 0
            self.erased = True
            return [ready_message(0, mcu_id=self.mcu_id)]

        if cmd is Command.FLASH_SET_ADDRESS:
            address = packet.address
            if address >= size:
                return [self._msg(Command.FLASH_ADDRESS_ERROR, payload=(size - 1).to_bytes(4, "big"))]
            self.flash_addr = address
            return [ready_message(address, mcu_id=self.mcu_id)]

        if cmd is Command.FLASH_DATA:
            if packet.address_low != (self.flash_addr & ADDRESS_LOW_MASK):
                return [self._msg(Command.FLASH_DATA_ERROR, payload=self.flash_addr.to_bytes(4, "big"))]
            if self.flash_addr + packet.length > size:
                return [self._msg(Command.FLASH_ADDRESS_ERROR, payload=(size - 1).to_bytes(4, "big"))]
            for i, byte in enumerate(packet.data):
                address = self.flash_addr + i
                self.flash[address] = self.corrupt.get(address, byte)
            self.flash_addr += packet.length
            return [ready_message(self.flash_addr, packet.length, mcu_id=self.mcu_id)]

        if cmd is Command.FLASH_READ:
            address = packet.address
            if address >= size:
                return [self._msg(Command.FLASH_READ_ADDRESS_ERROR)]
            chunk = bytes(self.flash[address : address + 4])
            return [self._msg(Command.FLASH_READ_DATA, length=len(chunk), address=address, payload=chunk)]

        if cmd is Command.FLASH_DONE_VERIFY:
            return [self._msg(Command.FLASH_DONE_VERIFY)]

        if cmd in (Command.FLASH_DONE, Command.START_APP):
            self.app_started = True
            return [self._msg(Command.START_APP)]

        return [self._msg(Command.ERROR)]


class LoopbackTransport:
    """Transport stand-in that hands every sent frame to a FakeBootloader."""

    def __init__(self, device: Optional[FakeBootloader] = None, announce: bool = True) -> None:
        self.device = device
        self.queue = deque()
        self.sent: List[can.Message] = []
        self.opened = False
        self.closed = False
        if device is not None and announce:
            self.queue.append(device.announce())

    def open(self) -> None:
        self.opened = True

    def close(self) -> None:
        self.closed = True

    def send(self, message: can.Message) -> None:
        self.sent.append(message)
        if self.device is not None:
            self.queue.extend(self.device.respond(message))

    def recv(self, timeout: Optional[float] = None) -> Optional[can.Message]:
        return self.queue.popleft() if self.queue else None

    def frames(self, idle_timeout: Optional[float] = None):
        while True:
            if self.queue:
                yield self.queue.popleft()
            elif idle_timeout is None:
                raise AssertionError("session would wait forever on an idle bus")
            else:
                yield None

    def sent_commands(self) -> List[Command]:
        return [decode_packet(bytes(m.data)).command for m in self.sent]


@pytest.fixture
def device() -> FakeBootloader:
    return FakeBootloader()


@pytest.fixture
def transport(device) -> LoopbackTransport:
    return LoopbackTransport(device)
