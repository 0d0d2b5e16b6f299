"""
Flash session state machine for the MCP CAN bootloader.

The session is driven entirely by inbound CAN messages. Each call to
`FlashSession.handle_message` runs one state transition to completion,
including every outbound frame it produces, before returning.

High-level flow:
    BOOTLOADER_START -> FLASH_INIT
    FLASH_READY      -> [FLASH_ERASE -> FLASH_READY]
                     -> FLASH_SET_ADDRESS / FLASH_DATA ... (one per FLASH_READY)
                     -> FLASH_DONE_VERIFY -> FLASH_READ ... -> START_APP
                     or FLASH_DONE -> START_APP

    Read mode: FLASH_READY -> FLASH_READ ... -> (max address | READ_ADDRESS_ERROR)
               -> hex output -> START_APP

The protocol is strict request/acknowledge: the session never sends a second
frame before the device answered the previous one. There are no timeouts or
retransmissions at this level; the driver loop decides when a session has
stalled.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

import can

from mcp_can_flasher.core.messages import WarningCode, WarningItem
from mcp_can_flasher.memory_image import ImageCursor, MemoryImage
from mcp_can_flasher.models import detect_part, get_part, get_signature
from mcp_can_flasher.protocol.codec import (
    BOOTLOADER_CMD_VERSION,
    CAN_EXT_ID_MAX,
    CAN_ID_MCU_TO_REMOTE_DEFAULT,
    CAN_ID_REMOTE_TO_MCU_DEFAULT,
    MAX_CHUNK_SIZE,
    PAYLOAD_SIZE,
    ADDRESS_LOW_MASK,
    Command,
    Packet,
    build_command,
    build_flash_data,
    build_flash_init,
    build_flash_read,
    build_message,
    build_set_address,
    decode_packet,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]


class SessionState(Enum):
    """Protocol state. READING also covers post-flash verification."""
    INIT = "init"
    FLASHING = "flashing"
    READING = "reading"


class SessionOutcome(Enum):
    """How a session ended, or RUNNING while it has not."""
    RUNNING = "running"
    SUCCESS = "success"
    ABORTED = "aborted"
    STALLED = "stalled"


def _hex_bytes(data: bytes) -> str:
    return " ".join(f"0x{b:02X}" for b in data)


@dataclass
class SessionConfig:
    """
    Everything the session needs to know about one flashing run.

    Attributes:
        mcu_id: 16-bit ID of the bootloader instance on the bus
        part: Part name or alias used to look up the device signature
        can_id_mcu: CAN ID of frames sent by the MCU
        can_id_remote: CAN ID of frames sent to the MCU
        read: Read flash into a hex image instead of flashing
        max_read_address: Stop reading once past this address (None/0 = whole flash)
        erase: Erase the whole flash before flashing
        verify: Read back and compare after flashing (always off when reading)
        force: Continue on bootloader command version mismatch
    """
    mcu_id: int
    part: str
    can_id_mcu: int = CAN_ID_MCU_TO_REMOTE_DEFAULT
    can_id_remote: int = CAN_ID_REMOTE_TO_MCU_DEFAULT
    read: bool = False
    max_read_address: Optional[int] = None
    erase: bool = False
    verify: bool = True
    force: bool = False

    def __post_init__(self) -> None:
        if not (0 <= self.mcu_id <= 0xFFFF):
            raise ValueError(f"MCU ID must be 0x0000..0xFFFF, got 0x{self.mcu_id:X}")
        for label, can_id in (("can_id_mcu", self.can_id_mcu), ("can_id_remote", self.can_id_remote)):
            if not (0 <= can_id <= CAN_EXT_ID_MAX):
                raise ValueError(f"{label} must fit in 29 bits, got 0x{can_id:X}")
        if self.max_read_address is not None and self.max_read_address < 0:
            raise ValueError("max_read_address must be >= 0")
        if self.read:
            # nothing to compare against when only reading
            self.verify = False

    @property
    def signature(self) -> bytes:
        return get_signature(self.part)


class FlashSession:
    """
    One remote flasher talking to one bootloader instance.

    Outbound frames go through the `send` callable (normally
    `CANTransport.send`). The session owns all mutable protocol state:
    the state enum, the image cursor, the read buffer and the outcome.

    Example:
        session = FlashSession(config, transport.send, image=image)
        for msg in transport.frames(idle_timeout=5.0):
            if msg is None:
                session.mark_stalled("no response")
            else:
                session.handle_message(msg)
            if session.finished:
                break
    """

    def __init__(
        self,
        config: SessionConfig,
        send: Callable[[can.Message], None],
        image: Optional[MemoryImage] = None,
        *,
        on_read_complete: Optional[Callable[[MemoryImage], None]] = None,
        progress_cb: Optional[ProgressCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not config.read and image is None:
            raise ValueError("an image is required unless reading")

        self.config = config
        self.send = send
        self.image = image if image is not None else MemoryImage()
        self.cursor = ImageCursor(self.image)
        self.on_read_complete = on_read_complete
        self.progress_cb = progress_cb
        self.clock = clock

        self.signature = config.signature
        self.state = SessionState.INIT
        self.outcome = SessionOutcome.RUNNING
        self.abort_reason: Optional[str] = None
        self.items: List[WarningItem] = []

        self._erase_pending = config.erase
        self.read_address = 0
        self.read_buffer = bytearray()
        self.read_image: Optional[MemoryImage] = None

        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.frames_sent = 0
        self.bytes_flashed = 0
        self.bytes_verified = 0

        if get_part(config.part) is None:
            self._record(WarningItem.warn(
                WarningCode.W_PART_UNKNOWN,
                f"Unknown part '{config.part}', no bootloader will match its signature",
            ))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def finished(self) -> bool:
        return self.outcome is not SessionOutcome.RUNNING

    @property
    def elapsed_ms(self) -> int:
        """Milliseconds since FLASH_INIT was sent (0 before that)."""
        if self.started_at is None:
            return 0
        end = self.finished_at if self.finished_at is not None else self.clock()
        return int((end - self.started_at) * 1000)

    def mark_stalled(self, reason: str = "no response from bootloader") -> None:
        """Give up waiting; called by the driver loop on idle timeout."""
        if self.finished:
            return
        logger.error("Session stalled in state %s: %s", self.state.value, reason)
        self._record(WarningItem.error(WarningCode.W_STALLED, f"Session stalled: {reason}"))
        self.abort_reason = reason
        self._finish(SessionOutcome.STALLED)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_message(self, msg: can.Message) -> bool:
        """
        Process one inbound frame.

        Frames with another CAN ID, a payload length other than 8 or another
        MCU ID belong to other devices on the bus and are ignored.

        Returns:
            True if the frame was addressed to this session.
        """
        if self.finished:
            return False
        if msg.arbitration_id != self.config.can_id_mcu:
            return False
        if len(msg.data) != PAYLOAD_SIZE:
            return False

        packet = decode_packet(bytes(msg.data))
        if packet.mcu_id != self.config.mcu_id:
            return False

        if self.state is SessionState.INIT:
            self._handle_init(packet)
        elif self.state is SessionState.FLASHING:
            self._handle_flashing(packet)
        else:
            self._handle_reading(packet)
        return True

    def _handle_init(self, packet: Packet) -> None:
        cmd = packet.command
        if cmd is Command.BOOTLOADER_START:
            self._on_bootloader_start(packet)
        elif cmd is Command.FLASH_READY:
            self._on_init_ready(packet)
        else:
            self._unexpected(packet)

    def _handle_flashing(self, packet: Packet) -> None:
        cmd = packet.command
        if cmd is Command.FLASH_READY:
            written = packet.length
            self.cursor.advance(written)
            self.bytes_flashed += written
            self._progress("flash", self.bytes_flashed, self.image.total_size)
            self._advance_flash(packet.address)
        elif cmd is Command.FLASH_DATA_ERROR:
            logger.error("Flash data error at 0x%08X!", self.cursor.address)
            self._record(WarningItem.error(
                WarningCode.W_DATA_ERROR,
                f"Flash data error at 0x{self.cursor.address:08X}",
                f"MCU expects address 0x{packet.address:08X}",
            ))
        elif cmd is Command.FLASH_ADDRESS_ERROR:
            logger.error("Flash address error at 0x%08X!", self.cursor.address)
            self._record(WarningItem.error(
                WarningCode.W_ADDRESS_ERROR,
                f"Flash address error at 0x{self.cursor.address:08X}",
                f"Last flashable address is 0x{packet.address:08X}",
            ))
        elif cmd is Command.FLASH_DONE_VERIFY:
            self._begin_verify()
        elif cmd is Command.START_APP:
            self._on_start_app()
        else:
            self._unexpected(packet)

    def _handle_reading(self, packet: Packet) -> None:
        cmd = packet.command
        if cmd is Command.FLASH_DONE_VERIFY:
            self._begin_verify()
        elif cmd is Command.FLASH_READ_DATA:
            self._on_read_data(packet)
        elif cmd is Command.FLASH_READ_ADDRESS_ERROR:
            if self.config.verify:
                # running out of flash before the image is exhausted
                self._abort(
                    WarningCode.W_VERIFY_END_OF_FLASH,
                    f"Reading flash failed during verify at 0x{self.cursor.address:08X}",
                )
            else:
                self._finish_read()
        elif cmd is Command.START_APP:
            self._on_start_app()
        else:
            self._unexpected(packet)

    # ------------------------------------------------------------------
    # Init
    # ------------------------------------------------------------------

    def _on_bootloader_start(self, packet: Packet) -> None:
        if packet.signature != self.signature:
            announced = detect_part(packet.signature)
            announced_name = f" ({announced.name})" if announced else ""
            logger.error("Got bootloader start message but device signature mismatched!")
            logger.error(
                "Expected %s for %s, got %s%s",
                _hex_bytes(self.signature), self.config.part,
                _hex_bytes(packet.signature), announced_name,
            )
            self._record(WarningItem.error(
                WarningCode.W_SIGNATURE_MISMATCH,
                "Device signature mismatch",
                f"Expected {_hex_bytes(self.signature)} for {self.config.part}, "
                f"got {_hex_bytes(packet.signature)}{announced_name}",
            ))
            return

        if packet.version != BOOTLOADER_CMD_VERSION:
            detail = (
                f"MCU command version 0x{packet.version:02X}, "
                f"expected 0x{BOOTLOADER_CMD_VERSION:02X}"
            )
            if not self.config.force:
                logger.error("Bootloader command version mismatch: %s. Use --force to flash anyway.", detail)
                self._record(WarningItem.error(WarningCode.W_VERSION_MISMATCH, "Bootloader version mismatch", detail))
                return
            logger.warning("Bootloader command version mismatch: %s. Flashing anyway (forced).", detail)
            self._record(WarningItem.warn(WarningCode.W_VERSION_FORCED, "Bootloader version mismatch ignored", detail))

        logger.info("Got bootloader start, entering flash mode ...")
        self.started_at = self.clock()
        self._send(build_flash_init(self.config.mcu_id, self.signature))

    def _on_init_ready(self, packet: Packet) -> None:
        if self.config.read:
            logger.info("Got flash ready message, reading flash ...")
            self.state = SessionState.READING
            self.read_address = 0
            self._send(build_flash_read(self.config.mcu_id, 0))
        elif self._erase_pending:
            logger.info("Got flash ready message, erasing flash ...")
            self._erase_pending = False
            self._send(build_command(self.config.mcu_id, Command.FLASH_ERASE))
        else:
            logger.info("Got flash ready message, begin flashing ...")
            self.state = SessionState.FLASHING
            self._advance_flash(packet.address)

    # ------------------------------------------------------------------
    # Flashing
    # ------------------------------------------------------------------

    def _advance_flash(self, remote_address: int) -> None:
        """Send the next SET_ADDRESS, FLASH_DATA or the final DONE command."""
        while self.cursor.exhausted:
            if not self.cursor.next_range():
                logger.info("All data transmitted. Finalizing ...")
                if self.config.verify:
                    self.state = SessionState.READING
                    self._send(build_command(self.config.mcu_id, Command.FLASH_DONE_VERIFY))
                else:
                    self._send(build_command(self.config.mcu_id, Command.FLASH_DONE))
                return

        address = self.cursor.address
        if address != remote_address:
            logger.info("Setting flash address to 0x%08X ...", address)
            self._send(build_set_address(self.config.mcu_id, address))
            return

        chunk = self.cursor.chunk(MAX_CHUNK_SIZE)
        logger.debug("Sending flash data 0x%08X (%d bytes) ...", address, len(chunk))
        self._send(build_flash_data(self.config.mcu_id, address, chunk))

    # ------------------------------------------------------------------
    # Reading / verifying
    # ------------------------------------------------------------------

    def _begin_verify(self) -> None:
        logger.info("Start reading flash to verify ...")
        self.state = SessionState.READING
        self.cursor.reset()
        self.bytes_verified = 0
        self._advance_verify()

    def _advance_verify(self) -> None:
        while self.cursor.exhausted:
            if not self.cursor.next_range():
                logger.info("Flash and verify done in %d ms.", self.elapsed_ms)
                self._send_start_app()
                return
        self._send(build_flash_read(self.config.mcu_id, self.cursor.address))

    def _on_read_data(self, packet: Packet) -> None:
        expected = self.cursor.address if self.config.verify else self.read_address
        if (expected & ADDRESS_LOW_MASK) != packet.address_low:
            self._abort(
                WarningCode.W_READ_DESYNC,
                f"Got an unexpected address of read data from MCU "
                f"(expected low bits 0x{expected & ADDRESS_LOW_MASK:02X}, "
                f"got 0x{packet.address_low:02X})",
            )
            return

        logger.debug("Got flash data for 0x%08X ...", expected)

        if self.config.verify:
            for byte in packet.data:
                want = self.cursor.expected(0)
                if want is not None:
                    if want != byte:
                        self._abort(
                            WarningCode.W_VERIFY_MISMATCH,
                            f"Verify failed at 0x{self.cursor.address:08X}: "
                            f"expected 0x{want:02X}, read 0x{byte:02X}",
                        )
                        return
                    self.bytes_verified += 1
                self.cursor.advance(1)
            self._progress("verify", self.bytes_verified, self.image.total_size)
            self._advance_verify()
            return

        self.read_buffer.extend(packet.data)
        self.read_address += len(packet.data)
        self._progress("read", len(self.read_buffer), self.config.max_read_address or 0)

        limit = self.config.max_read_address
        if limit and self.read_address > limit:
            self._finish_read()
            return
        self._send(build_flash_read(self.config.mcu_id, self.read_address))

    def _finish_read(self) -> None:
        self.read_image = MemoryImage({0x0000: bytes(self.read_buffer)})
        logger.info("Reading flash done in %d ms (%d bytes).", self.elapsed_ms, len(self.read_buffer))
        # the MCU must leave the bootloader even when storing the image fails
        try:
            if self.on_read_complete is not None:
                self.on_read_complete(self.read_image)
        finally:
            self._send_start_app()

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _on_start_app(self) -> None:
        if self.state is SessionState.FLASHING:
            logger.info("Flash done in %d ms.", self.elapsed_ms)
        logger.info("MCU is starting the app.")
        self._finish(SessionOutcome.SUCCESS)

    def _abort(self, code: WarningCode, reason: str) -> None:
        """Leave the bootloader so the MCU keeps running its app, and stop."""
        logger.error(reason)
        logger.error("Will now abort and exit the bootloader ...")
        self._record(WarningItem.error(code, reason))
        self.abort_reason = reason
        self._send_start_app()
        self._finish(SessionOutcome.ABORTED)

    def _send_start_app(self) -> None:
        logger.info("Starting the app on the MCU ...")
        self._send(build_command(self.config.mcu_id, Command.START_APP))

    def _finish(self, outcome: SessionOutcome) -> None:
        self.outcome = outcome
        self.finished_at = self.clock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _unexpected(self, packet: Packet) -> None:
        logger.warning("Got unexpected message from MCU: %s (state %s)", packet.name, self.state.value)
        self._record(WarningItem.warn(
            WarningCode.W_UNEXPECTED_COMMAND,
            f"Unexpected {packet.name} in state {self.state.value}",
        ))

    def _record(self, item: WarningItem) -> None:
        self.items.append(item)

    def _progress(self, phase: str, done: int, total: int) -> None:
        if self.progress_cb:
            self.progress_cb(phase, done, total)

    def _send(self, payload: bytes) -> None:
        self.send(build_message(self.config.can_id_remote, payload))
        self.frames_sent += 1
