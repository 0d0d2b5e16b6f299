"""
Core workflow actions for the MCP CAN flasher.

This module exposes functions the CLI (or any other front end) can call.
Each action opens the bus, drives a flash session to completion and returns
an OperationResult instead of exiting the process.
"""

import dataclasses
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from mcp_can_flasher.memory_image import MemoryImage, MemoryImageError
from mcp_can_flasher.models import detect_part, get_part
from mcp_can_flasher.protocol.can_transport import BusConfig, CANTransport, CANTransportError
from mcp_can_flasher.protocol.codec import (
    PAYLOAD_SIZE,
    Command,
    ProtocolError,
    decode_packet,
)
from mcp_can_flasher.protocol.session import (
    FlashSession,
    ProgressCallback,
    SessionConfig,
    SessionOutcome,
)

from .messages import MessageLevel, WarningCode, WarningItem
from .results import OperationResult
from .safety import OutputExistsError, check_image_fits, check_output_path

logger = logging.getLogger(__name__)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "mcp_can_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def run_session(
    session: FlashSession,
    transport: CANTransport,
    idle_timeout: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> SessionOutcome:
    """
    Feed inbound frames to the session until it finishes.

    Frames are handled strictly one at a time. With an idle_timeout, the
    session is marked stalled once no frame addressed to it arrived for that
    many seconds; frames from other bus participants do not count.
    """
    last_activity = clock()
    for msg in transport.frames(idle_timeout):
        if msg is not None and session.handle_message(msg):
            last_activity = clock()
        elif idle_timeout is not None and clock() - last_activity >= idle_timeout:
            session.mark_stalled(f"no response for {idle_timeout:g} s")
        if session.finished:
            break
    return session.outcome


def _session_result(result: OperationResult, session: FlashSession) -> OperationResult:
    """Copy session outcome, timing and recorded warnings into the result."""
    result.outcome = session.outcome.name
    result.elapsed_ms = session.elapsed_ms
    result.items.extend(session.items)
    for item in session.items:
        result.add_warning(item.title)
    result.metadata.update({
        "frames_sent": session.frames_sent,
        "bytes_flashed": session.bytes_flashed,
        "bytes_verified": session.bytes_verified,
        "final_state": session.state.value,
    })

    if session.outcome is SessionOutcome.SUCCESS:
        result.ok = True
    else:
        result.ok = False
        result.add_error(session.abort_reason or f"Session ended as {session.outcome.name}")
    return result


def flash_firmware(
    image: MemoryImage,
    session_config: SessionConfig,
    bus_config: Optional[BusConfig] = None,
    idle_timeout: Optional[float] = None,
    progress_cb: Optional[ProgressCallback] = None,
    transport: Optional[CANTransport] = None,
) -> OperationResult:
    """
    Flash a memory image into a bootloader waiting on the bus.

    Args:
        image: Firmware to flash
        session_config: Protocol settings (read is ignored, always flashes)
        bus_config: CAN bus to open when no transport is given
        idle_timeout: Seconds without a bootloader reply before giving up
            (None waits forever, including for the bootloader announcement)
        progress_cb: Optional callback(phase, done, total), phase is
            "flash" or "verify"
        transport: Transport to use instead of opening bus_config

    Returns:
        OperationResult with:
            - ok: True if the MCU confirmed START_APP
            - outcome: SUCCESS, ABORTED or STALLED
            - bytes_len: image size in bytes
            - elapsed_ms: time from FLASH_INIT to completion
    """
    if session_config.read:
        session_config = dataclasses.replace(session_config, read=False)

    with _capture_logs() as logs:
        part = get_part(session_config.part)
        result = OperationResult(
            ok=False,
            operation="flash",
            part=part.name if part else session_config.part,
            bytes_len=image.total_size,
        )
        result.logs = logs
        result.metadata["ranges"] = len(image)

        problem = check_image_fits(image, part)
        if problem:
            logger.warning(problem)
            result.items.append(WarningItem.warn(WarningCode.W_IMAGE_TOO_LARGE, problem))
            result.add_warning(problem)

        transport = transport or CANTransport(bus_config)
        try:
            transport.open()
            try:
                session = FlashSession(session_config, transport.send, image, progress_cb=progress_cb)
                logger.info(
                    "Waiting for bootloader start message from MCU 0x%04X ...",
                    session_config.mcu_id,
                )
                run_session(session, transport, idle_timeout)
            finally:
                transport.close()
        except (CANTransportError, ProtocolError, ValueError) as e:
            logger.error("flash failed: %s", e)
            result.add_error(str(e))
            return result

        return _session_result(result, session)


def read_flash(
    output: Union[str, Path],
    session_config: SessionConfig,
    bus_config: Optional[BusConfig] = None,
    idle_timeout: Optional[float] = None,
    progress_cb: Optional[ProgressCallback] = None,
    transport: Optional[CANTransport] = None,
) -> OperationResult:
    """
    Read the MCU flash into an Intel HEX file.

    The output path is checked before the bus is opened; an existing file is
    never overwritten. '-' writes the hex text to stdout.

    Returns:
        OperationResult with:
            - metadata["image"]: MemoryImage that was read
            - metadata["output"]: where it was written
            - bytes_len: number of bytes read
    """
    if not session_config.read:
        session_config = dataclasses.replace(session_config, read=True)

    with _capture_logs() as logs:
        part = get_part(session_config.part)
        part_name = part.name if part else session_config.part

        try:
            check_output_path(output)
        except OutputExistsError as e:
            logger.error("%s", e)
            result = OperationResult.failure(operation="read", error=str(e), part=part_name)
            result.metadata["output_exists"] = True
            result.logs = logs
            return result

        result = OperationResult(ok=False, operation="read", part=part_name)
        result.logs = logs
        result.metadata["output"] = str(output)

        def _write_output(image: MemoryImage) -> None:
            image.write_hex_file(output)
            result.metadata["image"] = image
            result.bytes_len = image.total_size
            if str(output) != "-":
                logger.info("Wrote %d bytes to %s", image.total_size, output)

        transport = transport or CANTransport(bus_config)
        try:
            transport.open()
            try:
                session = FlashSession(
                    session_config,
                    transport.send,
                    on_read_complete=_write_output,
                    progress_cb=progress_cb,
                )
                logger.info(
                    "Waiting for bootloader start message from MCU 0x%04X ...",
                    session_config.mcu_id,
                )
                run_session(session, transport, idle_timeout)
            finally:
                transport.close()
        except (CANTransportError, ProtocolError, MemoryImageError, OSError, ValueError) as e:
            logger.error("read failed: %s", e)
            result.add_error(str(e))
            return result

        result = _session_result(result, session)
        if result.ok and "image" not in result.metadata:
            result.add_error("MCU started the app before the read completed")
        return result


def detect_bootloaders(
    bus_config: Optional[BusConfig] = None,
    duration: float = 5.0,
    transport: Optional[CANTransport] = None,
    clock: Callable[[], float] = time.monotonic,
) -> OperationResult:
    """
    Listen for BOOTLOADER_START announcements without sending anything.

    Returns:
        OperationResult with metadata["bootloaders"]: list of dicts with
        can_id, mcu_id, signature, part and version for each distinct
        (CAN ID, MCU ID) pair seen.
    """
    with _capture_logs() as logs:
        result = OperationResult(ok=True, operation="detect")
        result.logs = logs
        found: Dict[Any, Dict[str, Any]] = {}

        transport = transport or CANTransport(bus_config)
        try:
            transport.open()
            try:
                logger.info("Listening for bootloader announcements for %g s ...", duration)
                deadline = clock() + duration
                while True:
                    remaining = deadline - clock()
                    if remaining <= 0:
                        break
                    msg = transport.recv(timeout=remaining)
                    if msg is None or len(msg.data) != PAYLOAD_SIZE:
                        continue
                    packet = decode_packet(bytes(msg.data))
                    if packet.command is not Command.BOOTLOADER_START:
                        continue
                    key = (msg.arbitration_id, packet.mcu_id)
                    if key in found:
                        continue
                    part = detect_part(packet.signature)
                    found[key] = {
                        "can_id": msg.arbitration_id,
                        "mcu_id": packet.mcu_id,
                        "signature": packet.signature,
                        "part": part.name if part else None,
                        "version": packet.version,
                    }
                    logger.info(
                        "Bootloader on 0x%08X: MCU 0x%04X, %s",
                        msg.arbitration_id,
                        packet.mcu_id,
                        part.name if part else "unknown part",
                    )
            finally:
                transport.close()
        except CANTransportError as e:
            logger.error("detect failed: %s", e)
            result.add_error(str(e))

        bootloaders: List[Dict[str, Any]] = list(found.values())
        result.metadata["bootloaders"] = bootloaders
        if result.ok and not bootloaders:
            result.add_warning("No bootloader announcements seen. Reset the MCU while listening.")
        return result


def inspect_hex(path: Union[str, Path], part_name: Optional[str] = None) -> OperationResult:
    """
    Load an Intel HEX file and describe its ranges.

    Returns:
        OperationResult with metadata["image"] and metadata["ranges"]
        (list of (start, end, size) tuples).
    """
    try:
        image = MemoryImage.from_hex_file(path)
    except MemoryImageError as e:
        return OperationResult.failure(operation="inspect_hex", error=str(e))

    part = get_part(part_name) if part_name else None
    result = OperationResult(
        ok=True,
        operation="inspect_hex",
        part=part.name if part else (part_name or ""),
        bytes_len=image.total_size,
    )
    result.metadata["image"] = image
    result.metadata["ranges"] = [(r.start, r.end, len(r)) for r in image]

    if part_name and part is None:
        result.items.append(WarningItem.warn(WarningCode.W_PART_UNKNOWN, f"Unknown part '{part_name}'"))
        result.add_warning(f"Unknown part '{part_name}'")

    problem = check_image_fits(image, part)
    if problem:
        result.items.append(WarningItem(MessageLevel.ERROR, WarningCode.W_IMAGE_TOO_LARGE, problem))
        result.add_error(problem)
    return result
