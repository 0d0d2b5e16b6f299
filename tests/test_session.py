"""Tests for the flash session state machine against a simulated bootloader."""

import math

import pytest

from conftest import (
    MCU_ID,
    SIG_328P,
    FakeBootloader,
    LoopbackTransport,
    mcu_message,
    ready_message,
)
from mcp_can_flasher.core.actions import run_session
from mcp_can_flasher.core.messages import WarningCode, codes_of
from mcp_can_flasher.memory_image import MemoryImage
from mcp_can_flasher.protocol.codec import (
    CAN_ID_REMOTE_TO_MCU_DEFAULT,
    Command,
    decode_packet,
)
from mcp_can_flasher.protocol.session import (
    FlashSession,
    SessionConfig,
    SessionOutcome,
    SessionState,
)


def make_config(**kwargs) -> SessionConfig:
    kwargs.setdefault("mcu_id", MCU_ID)
    kwargs.setdefault("part", "atmega328p")
    return SessionConfig(**kwargs)


def make_session(image=None, sent=None, **kwargs) -> FlashSession:
    sent = sent if sent is not None else []
    if image is None and not kwargs.get("read"):
        image = MemoryImage({0: bytes(range(1, 7))})
    return FlashSession(make_config(**kwargs), sent.append, image)


def decoded(messages):
    return [decode_packet(bytes(m.data)) for m in messages]


class TestSessionConfig:
    """Validation of the configuration dataclass."""

    def test_read_forces_verify_off(self):
        config = make_config(read=True, verify=True)
        assert config.verify is False

    def test_mcu_id_out_of_range(self):
        with pytest.raises(ValueError):
            make_config(mcu_id=0x10000)

    def test_can_id_must_fit_29_bits(self):
        with pytest.raises(ValueError):
            make_config(can_id_mcu=0x20000000)

    def test_signature_from_part_alias(self):
        assert make_config(part="m328p").signature == SIG_328P

    def test_image_required_for_flashing(self):
        with pytest.raises(ValueError):
            FlashSession(make_config(), lambda msg: None, None)


class TestHandshake:
    """BOOTLOADER_START handling in the init state."""

    def test_announcement_sends_flash_init(self, device):
        sent = []
        session = make_session(sent=sent)

        assert session.handle_message(device.announce()) is True

        assert len(sent) == 1
        assert sent[0].arbitration_id == CAN_ID_REMOTE_TO_MCU_DEFAULT
        assert sent[0].is_extended_id
        assert bytes(sent[0].data) == bytes([0x00, 0x42, 0x06, 0x00, 0x1E, 0x95, 0x0F, 0x00])
        assert session.started_at is not None
        assert session.state is SessionState.INIT

    def test_signature_mismatch_stays_idle(self):
        sent = []
        session = make_session(sent=sent)
        other = FakeBootloader(signature=b"\x1E\x98\x01")

        session.handle_message(other.announce())

        assert sent == []
        assert session.state is SessionState.INIT
        assert session.outcome is SessionOutcome.RUNNING
        assert codes_of(session.items) == [WarningCode.W_SIGNATURE_MISMATCH]
        assert "atmega2560" in session.items[0].detail

    def test_version_mismatch_without_force(self):
        sent = []
        session = make_session(sent=sent)

        session.handle_message(FakeBootloader(version=0x02).announce())

        assert sent == []
        assert codes_of(session.items) == [WarningCode.W_VERSION_MISMATCH]

    def test_version_mismatch_forced(self):
        sent = []
        session = make_session(sent=sent, force=True)

        session.handle_message(FakeBootloader(version=0x02).announce())

        assert [p.command for p in decoded(sent)] == [Command.FLASH_INIT]
        assert codes_of(session.items) == [WarningCode.W_VERSION_FORCED]

    def test_unknown_part_announces_zero_signature(self):
        sent = []
        session = make_session(sent=sent, part="attiny85")

        assert codes_of(session.items) == [WarningCode.W_PART_UNKNOWN]
        session.handle_message(FakeBootloader(signature=b"\x00\x00\x00").announce())
        assert decoded(sent)[0].signature == b"\x00\x00\x00"


class TestFiltering:
    """Frames for other devices are ignored without side effects."""

    def test_other_can_id(self, device):
        sent = []
        session = make_session(sent=sent)
        msg = mcu_message(Command.BOOTLOADER_START, payload=SIG_328P + b"\x01", can_id=0x123)

        assert session.handle_message(msg) is False
        assert sent == []

    def test_other_mcu_id(self):
        sent = []
        session = make_session(sent=sent)

        assert session.handle_message(FakeBootloader(mcu_id=0x0043).announce()) is False
        assert sent == []

    def test_short_payload(self, device):
        sent = []
        session = make_session(sent=sent)
        msg = device.announce()
        msg.data = msg.data[:7]
        msg.dlc = 7

        assert session.handle_message(msg) is False
        assert sent == []

    def test_custom_can_ids(self):
        sent = []
        session = make_session(sent=sent, can_id_mcu=0x100, can_id_remote=0x101)
        msg = mcu_message(Command.BOOTLOADER_START, payload=SIG_328P + b"\x01", can_id=0x100)

        assert session.handle_message(msg) is True
        assert sent[0].arbitration_id == 0x101

    def test_unexpected_command_is_recorded(self):
        session = make_session()

        assert session.handle_message(mcu_message(Command.FLASH_READ_DATA)) is True
        assert session.state is SessionState.INIT
        assert codes_of(session.items) == [WarningCode.W_UNEXPECTED_COMMAND]

    def test_unknown_command_code(self):
        session = make_session()

        session.handle_message(mcu_message(0x99))
        assert "0x99" in session.items[0].title


class TestFlashing:
    """Data transfer in the flashing state."""

    def test_six_byte_image_without_verify(self, device, transport):
        image = MemoryImage({0: bytes(range(1, 7))})
        session = FlashSession(make_config(verify=False), transport.send, image)

        outcome = run_session(session, transport)

        assert outcome is SessionOutcome.SUCCESS
        assert transport.sent_commands() == [
            Command.FLASH_INIT,
            Command.FLASH_DATA,
            Command.FLASH_DATA,
            Command.FLASH_DONE,
        ]
        data_frames = [bytes(m.data) for m in transport.sent[1:3]]
        assert data_frames[0] == bytes([0x00, 0x42, 0x08, 0x80, 1, 2, 3, 4])
        assert data_frames[1] == bytes([0x00, 0x42, 0x08, 0x44, 5, 6, 0, 0])
        assert bytes(device.flash[:6]) == bytes(range(1, 7))
        assert session.bytes_flashed == 6

    def test_ready_advances_by_reported_length(self):
        sent = []
        session = make_session(sent=sent, verify=False)
        session.handle_message(FakeBootloader().announce())
        session.handle_message(ready_message(0))
        assert session.state is SessionState.FLASHING

        session.handle_message(ready_message(4, length=4))

        assert session.cursor.offset == 4
        last = bytes(sent[-1].data)
        assert last[2] == Command.FLASH_DATA
        assert last[3] == 0x44
        assert last[4:6] == bytes([5, 6])

    def test_one_set_address_per_misaligned_range(self, device, transport):
        image = MemoryImage({0x10: bytes(range(10)), 0x40: b"\xAA" * 5, 0x80: b"\x55" * 3})
        session = FlashSession(make_config(verify=False), transport.send, image)

        run_session(session, transport)

        commands = transport.sent_commands()
        assert commands.count(Command.FLASH_SET_ADDRESS) == 3
        expected_data = sum(math.ceil(len(r) / 4) for r in image)
        assert commands.count(Command.FLASH_DATA) == expected_data
        addresses = [p.address for p in decoded(transport.sent) if p.command is Command.FLASH_SET_ADDRESS]
        assert addresses == [0x10, 0x40, 0x80]
        assert bytes(device.flash[0x10:0x1A]) == bytes(range(10))
        assert device.flash[0x1A] == 0xFF

    def test_adjacent_ranges_need_no_set_address(self, device, transport):
        image = MemoryImage({0x00: b"\x01\x02", 0x02: b"\x03\x04\x05"})
        session = FlashSession(make_config(verify=False), transport.send, image)

        run_session(session, transport)

        assert Command.FLASH_SET_ADDRESS not in transport.sent_commands()
        assert bytes(device.flash[:5]) == b"\x01\x02\x03\x04\x05"

    def test_erase_before_flashing(self, device, transport):
        device.flash[0x20] = 0x00
        image = MemoryImage({0: b"\x11\x22"})
        session = FlashSession(make_config(erase=True, verify=False), transport.send, image)

        run_session(session, transport)

        assert transport.sent_commands()[:3] == [
            Command.FLASH_INIT,
            Command.FLASH_ERASE,
            Command.FLASH_DATA,
        ]
        assert device.erased
        assert device.flash[0x20] == 0xFF

    def test_data_error_is_recorded(self):
        session = make_session(verify=False)
        session.handle_message(FakeBootloader().announce())
        session.handle_message(ready_message(0))

        session.handle_message(mcu_message(Command.FLASH_DATA_ERROR))

        assert session.outcome is SessionOutcome.RUNNING
        assert codes_of(session.items) == [WarningCode.W_DATA_ERROR]

    def test_address_error_is_recorded(self):
        session = make_session(verify=False)
        session.handle_message(FakeBootloader().announce())
        session.handle_message(ready_message(0))

        session.handle_message(mcu_message(Command.FLASH_ADDRESS_ERROR))

        assert codes_of(session.items) == [WarningCode.W_ADDRESS_ERROR]

    def test_progress_callback(self, device, transport):
        calls = []
        image = MemoryImage({0: bytes(10)})
        session = FlashSession(
            make_config(verify=False), transport.send, image,
            progress_cb=lambda phase, done, total: calls.append((phase, done, total)),
        )

        run_session(session, transport)

        flash_calls = [c for c in calls if c[0] == "flash"]
        assert flash_calls[-1] == ("flash", 10, 10)


class TestVerify:
    """Read-back verification after flashing."""

    def test_verify_success(self, device, transport):
        image = MemoryImage({0x10: bytes(range(10)), 0x40: b"\xAA" * 5})
        session = FlashSession(make_config(), transport.send, image)

        outcome = run_session(session, transport)

        assert outcome is SessionOutcome.SUCCESS
        assert session.bytes_verified == 15
        commands = transport.sent_commands()
        assert Command.FLASH_DONE_VERIFY in commands
        assert Command.FLASH_DONE not in commands
        assert commands[-1] is Command.START_APP
        reads = [p.address for p in decoded(transport.sent) if p.command is Command.FLASH_READ]
        assert reads == [0x10, 0x14, 0x18, 0x40, 0x44]

    def test_repeated_verify_is_stable(self, device):
        """Flashing the same image again verifies cleanly a second time."""
        image = MemoryImage({0x10: bytes(range(10)), 0x40: b"\xAA" * 5})

        for _ in range(2):
            transport = LoopbackTransport(device)
            session = FlashSession(make_config(), transport.send, image)

            outcome = run_session(session, transport)

            assert outcome is SessionOutcome.SUCCESS
            assert session.items == []
            assert session.bytes_verified == 15
            assert bytes(device.flash[0x10:0x1A]) == bytes(range(10))

    def test_verify_mismatch_aborts(self):
        device = FakeBootloader(corrupt={0x02: 0x00})
        transport = LoopbackTransport(device)
        image = MemoryImage({0: bytes(range(1, 9))})
        session = FlashSession(make_config(), transport.send, image)

        outcome = run_session(session, transport)

        assert outcome is SessionOutcome.ABORTED
        assert "0x00000002" in session.abort_reason
        assert codes_of(session.items) == [WarningCode.W_VERIFY_MISMATCH]
        assert transport.sent_commands()[-1] is Command.START_APP

    def test_read_desync_aborts(self):
        sent = []
        session = make_session(sent=sent)
        session.state = SessionState.READING
        session.cursor.next_range()

        session.handle_message(mcu_message(Command.FLASH_READ_DATA, length=4, address=0x03, payload=b"\x01\x02\x03\x04"))

        assert session.outcome is SessionOutcome.ABORTED
        assert codes_of(session.items) == [WarningCode.W_READ_DESYNC]
        assert decoded(sent)[-1].command is Command.START_APP

    def test_bytes_outside_range_are_not_compared(self):
        sent = []
        session = make_session(MemoryImage({0: b"\x01\x02"}), sent=sent)
        session.state = SessionState.READING
        session.cursor.next_range()

        session.handle_message(mcu_message(Command.FLASH_READ_DATA, length=4, address=0, payload=b"\x01\x02\xFF\xFF"))

        assert session.outcome is SessionOutcome.RUNNING
        assert session.bytes_verified == 2
        assert decoded(sent)[-1].command is Command.START_APP

    def test_read_address_error_during_verify_aborts(self):
        session = make_session()
        session.state = SessionState.READING
        session.cursor.next_range()

        session.handle_message(mcu_message(Command.FLASH_READ_ADDRESS_ERROR))

        assert session.outcome is SessionOutcome.ABORTED
        assert codes_of(session.items) == [WarningCode.W_VERIFY_END_OF_FLASH]

    def test_done_verify_restarts_cursor(self):
        sent = []
        session = make_session(sent=sent)
        session.state = SessionState.FLASHING
        session.cursor.next_range()
        session.cursor.advance(6)

        session.handle_message(mcu_message(Command.FLASH_DONE_VERIFY))

        assert session.state is SessionState.READING
        assert session.cursor.index == 0
        assert session.cursor.offset == 0
        assert decoded(sent)[-1].command is Command.FLASH_READ
        assert decoded(sent)[-1].address == 0


class TestReadMode:
    """Reading flash into a memory image."""

    def test_read_with_max_address(self, device, transport):
        device.flash[:16] = bytes(range(16))
        completed = []
        session = FlashSession(
            make_config(read=True, max_read_address=10),
            transport.send,
            on_read_complete=completed.append,
        )

        outcome = run_session(session, transport)

        assert outcome is SessionOutcome.SUCCESS
        reads = [p.address for p in decoded(transport.sent) if p.command is Command.FLASH_READ]
        assert reads == [0, 4, 8]
        assert completed == [MemoryImage({0: bytes(range(12))})]
        assert session.read_image == completed[0]
        assert transport.sent_commands()[-1] is Command.START_APP

    def test_failing_read_callback_still_starts_app(self, device, transport):
        def store(image):
            raise OSError("disk full")

        session = FlashSession(
            make_config(read=True, max_read_address=3),
            transport.send,
            on_read_complete=store,
        )

        with pytest.raises(OSError):
            run_session(session, transport)

        assert transport.sent_commands()[-1] is Command.START_APP
        assert device.app_started

    def test_read_until_address_error(self):
        device = FakeBootloader(flash_size=16)
        device.flash[:] = bytes(range(100, 116))
        transport = LoopbackTransport(device)
        session = FlashSession(make_config(read=True), transport.send)

        outcome = run_session(session, transport)

        assert outcome is SessionOutcome.SUCCESS
        assert session.read_image == MemoryImage({0: bytes(range(100, 116))})

    def test_max_address_zero_reads_everything(self):
        device = FakeBootloader(flash_size=8)
        transport = LoopbackTransport(device)
        session = FlashSession(make_config(read=True, max_read_address=0), transport.send)

        run_session(session, transport)

        assert session.read_image.total_size == 8

    def test_read_skips_erase(self, device, transport):
        session = FlashSession(make_config(read=True, erase=True, max_read_address=3), transport.send)

        run_session(session, transport)

        assert Command.FLASH_ERASE not in transport.sent_commands()
        assert not device.erased

    def test_read_desync_aborts(self):
        sent = []
        session = make_session(sent=sent, read=True)
        session.state = SessionState.READING
        session.read_address = 8

        session.handle_message(mcu_message(Command.FLASH_READ_DATA, length=4, address=4, payload=bytes(4)))

        assert session.outcome is SessionOutcome.ABORTED
        assert session.read_image is None


class TestDriverLoop:
    """run_session termination."""

    def test_stalls_on_idle_timeout(self):
        transport = LoopbackTransport(None)
        session = make_session(sent=[])

        outcome = run_session(session, transport, idle_timeout=0)

        assert outcome is SessionOutcome.STALLED
        assert codes_of(session.items) == [WarningCode.W_STALLED]

    def test_finished_session_ignores_frames(self, device, transport):
        image = MemoryImage({0: b"\x01"})
        session = FlashSession(make_config(verify=False), transport.send, image)
        run_session(session, transport)

        assert session.handle_message(device.announce()) is False

    def test_flash_then_read_round_trip(self, device):
        image = MemoryImage({0x00: bytes(range(7)), 0x20: b"\xDE\xAD\xBE\xEF\x01"})
        flash_transport = LoopbackTransport(device)
        run_session(FlashSession(make_config(), flash_transport.send, image), flash_transport)

        read_transport = LoopbackTransport(device)
        reader = FlashSession(make_config(read=True, max_read_address=0x24), read_transport.send)
        assert run_session(reader, read_transport) is SessionOutcome.SUCCESS

        data = reader.read_image.ranges[0].data
        assert data[0x00:0x07] == bytes(range(7))
        assert data[0x20:0x25] == b"\xDE\xAD\xBE\xEF\x01"
