"""Tests for the bootloader session state machine and protocol exchanges."""

import pytest

from stm32_uart_loader.config import FLASH_BASE
from stm32_uart_loader.errors import (
    AckTimeout,
    BootloaderEntryFailed,
    CommandRejected,
    EraseFailed,
    InvalidAddress,
    ProtectionFailed,
    ReadProtected,
    WriteFailed,
)
from stm32_uart_loader.protocol.framing import (
    CMD_GET,
    CMD_GET_VERSION,
    CMD_GO,
    CMD_WRITE_MEMORY,
    address_frame,
    command_frame,
)

from conftest import ACK, NACK, FakeLine, Rig

INIT = b"\x7F"


class TestAwaitAck:
    """ACK/NACK classification and timeouts."""

    def test_ack_is_true(self):
        r = Rig(pending=ACK)
        assert r.session.await_ack(0.1) is True

    def test_nack_is_false(self):
        r = Rig(pending=NACK)
        assert r.session.await_ack(0.1) is False

    def test_noise_is_skipped(self):
        r = Rig(pending=b"\x00\x42\x1F")
        assert r.session.await_ack(0.1) is False
        assert r.transport.read_byte() is None

    def test_silence_raises_timeout(self, rig):
        with pytest.raises(AckTimeout) as excinfo:
            rig.session.await_ack(0.1)
        assert excinfo.value.timeout == 0.1
        assert rig.clock.now >= 0.1

    def test_drain_discards_pending(self):
        r = Rig(pending=b"\x79\x1F\x00")
        assert r.session.drain_input() == 3
        assert r.transport.read_byte() is None


class TestEnterBootloader:
    """Bootloader entry and reset sequencing."""

    def test_entry_success(self, rig):
        rig.transport.queue(ACK)
        rig.session.enter_bootloader()

        assert rig.session.active is True
        assert rig.transport.writes == [INIT]
        assert rig.reset_line.levels == [False, True]
        # BOOT0 strapped high through reset, then released
        assert rig.boot0_line.levels == [True, False]
        assert rig.session.timeouts.connect_settle in rig.clock.sleeps

    def test_entry_nack_fails(self, rig):
        rig.transport.queue(NACK)
        with pytest.raises(BootloaderEntryFailed) as excinfo:
            rig.session.enter_bootloader()
        assert excinfo.value.received == 0x1F
        assert rig.session.active is False

    def test_entry_no_reply_fails(self, rig):
        with pytest.raises(BootloaderEntryFailed) as excinfo:
            rig.session.enter_bootloader()
        assert excinfo.value.received is None

    def test_stale_ack_is_drained_before_init(self):
        """A leftover ACK must not be mistaken for the init reply."""
        r = Rig(replies=[NACK], pending=ACK)
        with pytest.raises(BootloaderEntryFailed):
            r.session.enter_bootloader()

    def test_boot1_held_low(self):
        boot1 = FakeLine()
        r = Rig(replies=[ACK], boot1_line=boot1)
        r.session.enter_bootloader()
        assert boot1.levels == [False]

    def test_reset_leaves_bootloader(self, active_rig):
        active_rig.session.reset()
        assert active_rig.session.active is False
        assert active_rig.reset_line.levels[-2:] == [False, True]
        assert active_rig.boot0_line.levels[-1] is False
        assert active_rig.transport.writes == []

    def test_context_manager_resets_on_exit(self):
        r = Rig(reset_on_exit=True)
        with r.session as session:
            assert session is r.session
        assert r.reset_line.levels == [False, True]


class TestLazyActivation:
    """Public operations enter the bootloader exactly once when needed."""

    def test_single_entry_across_calls(self):
        r = Rig(replies=[ACK, ACK, ACK, ACK + b"\x01\x02\x03\x04"])
        assert r.session.read_memory(FLASH_BASE, 4) == b"\x01\x02\x03\x04"
        assert r.transport.writes[0] == INIT
        assert r.transport.count(INIT) == 1

        r.transport.queue(ACK, ACK, ACK + b"\x05\x06")
        assert r.session.read_memory(FLASH_BASE + 4, 2) == b"\x05\x06"
        assert r.transport.count(INIT) == 1

    def test_pointer_set_before_entry_is_kept(self):
        r = Rig(replies=[ACK, ACK, ACK, ACK])
        r.session.set_memory_pointer(0x80)
        r.session.write_memory(b"\x00" * 4)
        assert r.transport.writes[2] == address_frame(FLASH_BASE + 0x80)


class TestReadMemory:
    """Read Memory exchange."""

    def test_frames_sent(self, active_rig):
        active_rig.transport.queue(ACK, ACK, ACK + b"\xAA\xBB")
        data = active_rig.session.read_memory(0x08000100, 2)
        assert data == b"\xAA\xBB"
        assert active_rig.transport.writes == [
            b"\x11\xEE",
            address_frame(0x08000100),
            b"\x02\xFD",
        ]

    def test_length_clamped_to_255(self, active_rig):
        active_rig.transport.queue(ACK, ACK, ACK + bytes(range(255)))
        data = active_rig.session.read_memory(FLASH_BASE, 300)
        assert active_rig.transport.writes[-1] == b"\xFF\x00"
        assert len(data) == 255

    def test_address_nack(self, active_rig):
        active_rig.transport.queue(ACK, NACK)
        with pytest.raises(InvalidAddress) as excinfo:
            active_rig.session.read_memory(0x1234, 4)
        assert excinfo.value.address == 0x1234

    def test_length_nack_means_protected(self, active_rig):
        active_rig.transport.queue(ACK, ACK, NACK)
        with pytest.raises(ReadProtected) as excinfo:
            active_rig.session.read_memory(FLASH_BASE, 16)
        assert excinfo.value.length == 16

    def test_command_nack_means_protected(self, active_rig):
        active_rig.transport.queue(NACK)
        with pytest.raises(ReadProtected):
            active_rig.session.read_memory(FLASH_BASE, 16)

    def test_short_data_times_out(self, active_rig):
        active_rig.transport.queue(ACK, ACK, ACK + b"\x01")
        with pytest.raises(AckTimeout) as excinfo:
            active_rig.session.read_memory(FLASH_BASE, 4)
        assert excinfo.value.timeout == pytest.approx(active_rig.session.timeouts.bulk_read(4))


class TestWriteMemory:
    """Chunked Write Memory exchanges."""

    def test_600_bytes_in_three_frames(self, active_rig):
        data = bytes(range(256)) * 2 + bytes(88)
        active_rig.transport.queue(*([ACK] * 9))

        assert active_rig.session.write_memory(data) == 600

        writes = active_rig.transport.writes
        assert len(writes) == 9
        assert [writes[i] for i in (1, 4, 7)] == [
            address_frame(FLASH_BASE),
            address_frame(FLASH_BASE + 256),
            address_frame(FLASH_BASE + 512),
        ]
        data_frames = [writes[i] for i in (2, 5, 8)]
        assert [len(f) - 2 for f in data_frames] == [256, 256, 88]
        assert [f[0] for f in data_frames] == [0xFF, 0xFF, 87]
        assert active_rig.session.get_memory_pointer() == 600

    def test_failure_stops_at_last_good_chunk(self, active_rig):
        active_rig.transport.queue(ACK, ACK, ACK, ACK, ACK, NACK)
        with pytest.raises(WriteFailed) as excinfo:
            active_rig.session.write_memory(bytes(600))
        assert excinfo.value.address == FLASH_BASE + 256
        assert active_rig.session.get_memory_pointer() == 256
        assert active_rig.transport.count(command_frame(CMD_WRITE_MEMORY)) == 2

    def test_address_nack(self, active_rig):
        active_rig.transport.queue(ACK, NACK)
        with pytest.raises(InvalidAddress):
            active_rig.session.write_memory(b"\x00" * 4)
        assert active_rig.session.get_memory_pointer() == 0

    def test_explicit_address_moves_pointer(self, active_rig):
        active_rig.transport.queue(ACK, ACK, ACK)
        active_rig.session.write_memory(b"\x01\x02\x03\x04", address=FLASH_BASE + 0x40)
        assert active_rig.transport.writes[1] == address_frame(FLASH_BASE + 0x40)
        assert active_rig.session.get_memory_pointer() == 0x44

    def test_empty_data_sends_nothing(self, active_rig):
        assert active_rig.session.write_memory(b"") == 0
        assert active_rig.transport.writes == []

    def test_write_data_uses_write_timeout(self, active_rig):
        """Flash programming gets the longer write timeout, not the command one."""
        active_rig.transport.queue(ACK, ACK)
        start = active_rig.clock.now
        with pytest.raises(AckTimeout) as excinfo:
            active_rig.session.write_memory(b"\x01\x02\x03\x04")
        assert excinfo.value.timeout == active_rig.session.timeouts.write
        assert excinfo.value.stage == "Write data"
        assert active_rig.clock.now >= start + active_rig.session.timeouts.write
        assert active_rig.session.get_memory_pointer() == 0

    def test_write_command_uses_command_timeout(self, active_rig):
        with pytest.raises(AckTimeout) as excinfo:
            active_rig.session.write_memory(b"\x01\x02")
        assert excinfo.value.timeout == active_rig.session.timeouts.command
        assert excinfo.value.stage == "Write Memory"

    def test_write_address_uses_command_timeout(self, active_rig):
        active_rig.transport.queue(ACK)
        start = active_rig.clock.now
        with pytest.raises(AckTimeout) as excinfo:
            active_rig.session.write_memory(b"\x01\x02")
        assert excinfo.value.timeout == active_rig.session.timeouts.command
        assert excinfo.value.stage == "Write address"
        assert active_rig.clock.now < start + active_rig.session.timeouts.write



class TestMemoryPointer:
    """Relative pointer accessors."""

    def test_relative_round_trip(self, rig):
        rig.session.set_memory_pointer(0x100)
        assert rig.session.get_memory_pointer() == 0x100

    def test_custom_flash_base(self):
        r = Rig(replies=[ACK, ACK, ACK, ACK], flash_base=0x00100000)
        r.session.set_memory_pointer(0x10)
        r.session.write_memory(b"\x00\x00")
        assert r.transport.writes[2] == address_frame(0x00100010)


class TestGo:
    """Jump to application."""

    def test_go_leaves_bootloader(self, active_rig):
        active_rig.session.set_memory_pointer(0x400)
        active_rig.transport.queue(ACK, ACK)
        active_rig.session.go()
        assert active_rig.transport.writes == [command_frame(CMD_GO), address_frame(FLASH_BASE)]
        assert active_rig.session.active is False
        assert active_rig.session.get_memory_pointer() == 0

    def test_go_address_nack(self, active_rig):
        active_rig.transport.queue(ACK, NACK)
        with pytest.raises(InvalidAddress) as excinfo:
            active_rig.session.go(0x20000000)
        assert excinfo.value.address == 0x20000000
        assert active_rig.session.active is True

    def test_go_command_nack(self, active_rig):
        active_rig.transport.queue(NACK)
        with pytest.raises(CommandRejected):
            active_rig.session.go()


class TestDeviceInfo:
    """GET / GET_ID queries and caching."""

    def _queue_get(self, rig, commands=(0x00, 0x01, 0x02)):
        reply = bytes([len(commands), 0x31]) + bytes(commands)
        rig.transport.queue(ACK + reply + ACK)

    def test_get_parses_and_caches(self, active_rig):
        self._queue_get(active_rig)
        info = active_rig.session.get_device_info()
        assert info.bootloader_version == (3, 1)
        assert info.version_string == "3.1"
        assert info.supported_commands == (0x00, 0x01, 0x02)
        assert info.extended_erase is False

        sent = len(active_rig.transport.writes)
        assert active_rig.session.get_device_info() is info
        assert len(active_rig.transport.writes) == sent

    def test_version_comes_from_get_reply(self, active_rig):
        """Only GET goes out; the version byte leads its reply."""
        self._queue_get(active_rig, commands=(0x00, 0x01, 0x02, 0x11))
        info = active_rig.session.get_device_info()
        assert info.bootloader_version == (3, 1)
        assert active_rig.transport.writes == [command_frame(CMD_GET)]
        assert active_rig.transport.count(command_frame(CMD_GET_VERSION)) == 0

    def test_get_id_after_get_drains_trailing_ack(self, active_rig):
        self._queue_get(active_rig)
        active_rig.session.get_device_info()
        active_rig.transport.queue(ACK + b"\x01\x04\x10" + ACK)
        assert active_rig.session.get_product_id() == 0x0410
        assert active_rig.session.product_id == 0x0410

    def test_reset_invalidates_cache(self, active_rig):
        self._queue_get(active_rig)
        active_rig.session.get_device_info()
        active_rig.session.reset()
        assert active_rig.session.bootloader_version is None
        assert active_rig.session.supported_commands == ()

    def test_get_command_nack(self, active_rig):
        active_rig.transport.queue(NACK)
        with pytest.raises(CommandRejected) as excinfo:
            active_rig.session.get_device_info()
        assert excinfo.value.opcode == 0x00


class TestErase:
    """Legacy and extended erase."""

    def test_extended_pages(self, active_rig):
        active_rig.session.set_memory_pointer(0x100)
        active_rig.transport.queue(ACK, ACK)
        active_rig.session.erase_extended([0, 1, 2])
        assert active_rig.transport.writes == [
            b"\x44\xBB",
            bytes([0x00, 0x02, 0x00, 0x00, 0x00, 0x01, 0x00, 0x02, 0x01]),
        ]
        assert active_rig.session.get_memory_pointer() == 0

    @pytest.mark.parametrize(
        "method, payload",
        [
            ("erase_mass_extended", b"\xFF\xFF\x00"),
            ("erase_bank1_extended", b"\xFF\xFE\x01"),
            ("erase_bank2_extended", b"\xFF\xFD\x02"),
        ],
    )
    def test_extended_sentinels(self, active_rig, method, payload):
        active_rig.transport.queue(ACK, ACK)
        getattr(active_rig.session, method)()
        assert active_rig.transport.writes == [b"\x44\xBB", payload]

    def test_legacy_pages(self, active_rig):
        active_rig.transport.queue(ACK, ACK)
        active_rig.session.erase_legacy([1, 2])
        assert active_rig.transport.writes == [b"\x43\xBC", b"\x01\x01\x02\x02"]

    def test_legacy_erase_all(self, active_rig):
        active_rig.transport.queue(ACK, ACK)
        active_rig.session.erase_all_legacy()
        assert active_rig.transport.writes == [b"\x43\xBC", b"\xFF\x00"]

    def test_empty_page_list_rejected(self, active_rig):
        with pytest.raises(ValueError):
            active_rig.session.erase_legacy([])
        with pytest.raises(ValueError):
            active_rig.session.erase_extended([])

    def test_legacy_erase_over_255_pages_sends_nothing(self, active_rig):
        with pytest.raises(ValueError):
            active_rig.session.erase_legacy(range(256))
        assert active_rig.transport.writes == []

    def test_erase_command_uses_command_timeout(self, active_rig):
        with pytest.raises(AckTimeout) as excinfo:
            active_rig.session.erase_legacy([1])
        assert excinfo.value.timeout == active_rig.session.timeouts.command


    def test_nack_raises_erase_failed(self, active_rig):
        active_rig.transport.queue(ACK, NACK)
        with pytest.raises(EraseFailed):
            active_rig.session.erase_extended([5])

    def test_command_nack_raises_erase_failed(self, active_rig):
        active_rig.transport.queue(NACK)
        with pytest.raises(EraseFailed):
            active_rig.session.erase_all_legacy()

    def test_erase_uses_erase_timeout(self, active_rig):
        active_rig.transport.queue(ACK)
        with pytest.raises(AckTimeout) as excinfo:
            active_rig.session.erase_mass_extended()
        assert excinfo.value.timeout == active_rig.session.timeouts.erase


class TestProtection:
    """Protection toggles and the reset that follows them."""

    def test_clear_write_protection_reenters(self, active_rig):
        active_rig.session.set_memory_pointer(0x40)
        # both ACKs follow the command, then the re-entry init is ACKed
        active_rig.transport.queue(ACK + ACK, ACK)
        active_rig.session.clear_write_protection()

        assert active_rig.session.active is True
        assert active_rig.transport.writes == [b"\x73\x8C", INIT]
        assert active_rig.session.get_memory_pointer() == 0

    def test_set_write_protection_sends_sectors(self, active_rig):
        active_rig.session.set_memory_pointer(0x40)
        active_rig.transport.queue(ACK, ACK, ACK)
        active_rig.session.set_write_protection([0, 1])

        assert active_rig.transport.writes == [b"\x63\x9C", b"\x01\x00\x01\x00", INIT]
        assert active_rig.session.active is True
        assert active_rig.session.get_memory_pointer() == 0x40

    def test_clear_read_protection_reenters(self, active_rig):
        active_rig.transport.queue(ACK + ACK, ACK)
        active_rig.session.clear_read_protection()
        assert active_rig.transport.writes == [b"\x92\x6D", INIT]
        assert active_rig.session.active is True

    def test_reentry_waits_connect_settle(self, active_rig):
        active_rig.transport.queue(ACK + ACK, ACK)
        sleeps_before = len(active_rig.clock.sleeps)
        active_rig.session.set_read_protection()
        settle = active_rig.session.timeouts.connect_settle
        assert active_rig.clock.sleeps[sleeps_before:].count(settle) == 2

    def test_second_nack_raises(self, active_rig):
        active_rig.transport.queue(ACK + NACK)
        with pytest.raises(ProtectionFailed):
            active_rig.session.set_read_protection()

    def test_command_nack_raises(self, active_rig):
        active_rig.transport.queue(NACK)
        with pytest.raises(ProtectionFailed):
            active_rig.session.clear_write_protection()

    def test_protection_timeout_class(self, active_rig):
        active_rig.transport.queue(ACK)
        with pytest.raises(AckTimeout) as excinfo:
            active_rig.session.clear_read_protection()
        assert excinfo.value.timeout == active_rig.session.timeouts.protection
