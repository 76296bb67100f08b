"""
STM32 USART Bootloader Session

Owns the serial transport and the reset/BOOT0/BOOT1 control lines, and
drives the bootloader protocol (ST AN3155) one half-duplex exchange at a
time.

Protocol shape (every exchange):
    1. Drain stale input
    2. Send [ opcode | ~opcode ]          -> ACK (0x79) / NACK (0x1F)
    3. Send payload frame(s) + checksum   -> ACK / NACK per stage
    4. Read response data (queries, reads)

State:
    active          target is running system-memory bootloader code
    memory pointer  absolute address of the next write; exposed relative
                    to the flash base
    device info     GET / GET_ID replies, cached until the next reset

Every public operation enters the bootloader first if the session is not
active, so callers can invoke them cold.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Tuple

from stm32_uart_loader.config import (
    ACK,
    DEFAULT_TIMEOUTS,
    FLASH_BASE,
    INIT_BYTE,
    NACK,
    TimeoutProfile,
)
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
    CMD_ERASE,
    CMD_EXTENDED_ERASE,
    CMD_GET,
    CMD_GET_ID,
    CMD_GO,
    CMD_READ_MEMORY,
    CMD_READOUT_PROTECT,
    CMD_READOUT_UNPROTECT,
    CMD_WRITE_MEMORY,
    CMD_WRITE_PROTECT,
    CMD_WRITE_UNPROTECT,
    COMMAND_NAMES,
    ERASE_ALL_LEGACY,
    ERASE_BANK1_EXTENDED,
    ERASE_BANK2_EXTENDED,
    ERASE_MASS_EXTENDED,
    address_frame,
    chunk_data,
    clamp_read_length,
    command_frame,
    extended_page_frame,
    legacy_page_frame,
    read_length_frame,
    write_data_frame,
    write_protect_frame,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceInfo:
    """Reply to the GET command."""
    bootloader_version: Tuple[int, int]
    supported_commands: Tuple[int, ...]

    @property
    def version_string(self) -> str:
        major, minor = self.bootloader_version
        return f"{major}.{minor}"

    def supports(self, opcode: int) -> bool:
        """Whether the bootloader advertised `opcode`."""
        return opcode in self.supported_commands

    @property
    def extended_erase(self) -> bool:
        """True if the part uses Extended Erase (0x44) instead of Erase (0x43)."""
        return self.supports(CMD_EXTENDED_ERASE)


class BootloaderSession:
    """
    Stateful driver for one target on one serial link.

    Example:
        transport = SerialTransport("/dev/ttyUSB0")
        transport.open()
        session = BootloaderSession(
            transport,
            reset_line=SerialControlLine(transport, "rts", inverted=True),
            boot0_line=SerialControlLine(transport, "dtr"),
        )
        session.erase_mass_extended()
        session.write_memory(firmware)
        session.go()
    """

    def __init__(
        self,
        transport,
        reset_line,
        boot0_line,
        boot1_line=None,
        *,
        timeouts: TimeoutProfile = DEFAULT_TIMEOUTS,
        flash_base: int = FLASH_BASE,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        reset_on_exit: bool = False,
    ):
        """
        Args:
            transport: Object with read_byte() -> Optional[int] and write(bytes)
            reset_line: Control line wired to NRST (write(True) releases reset)
            boot0_line: Control line wired to BOOT0
            boot1_line: Optional control line wired to BOOT1
            timeouts: Timeout classes for each exchange
            flash_base: Absolute address relative pointers are measured from
            clock: Monotonic clock in seconds
            sleep: Sleep function (seconds)
            reset_on_exit: Reset into the application when used as a context manager
        """
        self.transport = transport
        self.reset_line = reset_line
        self.boot0_line = boot0_line
        self.boot1_line = boot1_line
        self.timeouts = timeouts
        self.flash_base = flash_base
        self.reset_on_exit = reset_on_exit
        self._clock = clock
        self._sleep = sleep

        self.active = False
        self._pointer = flash_base
        self._device_info: Optional[DeviceInfo] = None
        self._product_id: Optional[int] = None

    def __enter__(self) -> "BootloaderSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.reset_on_exit:
            self.reset()

    # ------------------------------------------------------------------
    # Cached device info
    # ------------------------------------------------------------------

    @property
    def bootloader_version(self) -> Optional[Tuple[int, int]]:
        return self._device_info.bootloader_version if self._device_info else None

    @property
    def supported_commands(self) -> Tuple[int, ...]:
        return self._device_info.supported_commands if self._device_info else ()

    @property
    def product_id(self) -> Optional[int]:
        return self._product_id

    def _forget_device(self) -> None:
        """Drop cached GET/GET_ID replies; they are only valid until a reset."""
        self._device_info = None
        self._product_id = None

    # ------------------------------------------------------------------
    # Framing & acknowledgment
    # ------------------------------------------------------------------

    def _send(self, data: bytes) -> None:
        logger.debug(f">>> {data.hex().upper()}")
        self.transport.write(data)

    def drain_input(self) -> int:
        """
        Discard everything waiting in the receive path.

        Returns:
            Number of bytes discarded
        """
        junk = bytearray()
        while True:
            byte = self.transport.read_byte()
            if byte is None:
                break
            junk.append(byte)
        if junk:
            logger.debug(f"Drained {len(junk)} stale bytes: {junk.hex().upper()}")
        return len(junk)

    def send_command(self, opcode: int) -> None:
        """Drain stale input, then send opcode and its complement."""
        self.drain_input()
        logger.debug(f"Command 0x{opcode:02X} ({COMMAND_NAMES.get(opcode, 'unknown')})")
        self._send(command_frame(opcode))

    def await_ack(self, timeout: float, stage: str = "") -> bool:
        """
        Poll for ACK/NACK.

        Returns:
            True on ACK, False on NACK

        Raises:
            AckTimeout: If neither arrives within `timeout` seconds
        """
        deadline = self._clock() + timeout
        while self._clock() < deadline:
            byte = self.transport.read_byte()
            if byte is None:
                self._sleep(self.timeouts.poll_interval)
                continue
            if byte == ACK:
                logger.debug("<<< ACK")
                return True
            if byte == NACK:
                logger.debug(f"<<< NACK{f' ({stage})' if stage else ''}")
                return False
            logger.debug(f"Ignoring noise byte 0x{byte:02X} while waiting for ACK")
        raise AckTimeout(timeout, stage)

    def _poll_byte(self, timeout: float) -> Optional[int]:
        """First byte to arrive within `timeout`, or None."""
        deadline = self._clock() + timeout
        while self._clock() < deadline:
            byte = self.transport.read_byte()
            if byte is not None:
                return byte
            self._sleep(self.timeouts.poll_interval)
        return None

    def _read_exact(self, count: int, timeout: float, stage: str = "") -> bytes:
        """Read exactly `count` bytes before the deadline or raise AckTimeout."""
        data = bytearray()
        deadline = self._clock() + timeout
        while len(data) < count:
            byte = self.transport.read_byte()
            if byte is not None:
                data.append(byte)
                continue
            if self._clock() >= deadline:
                logger.debug(f"Short read: {len(data)}/{count} bytes")
                raise AckTimeout(timeout, stage)
            self._sleep(self.timeouts.poll_interval)
        if data:
            logger.debug(f"<<< {data.hex().upper()}")
        return bytes(data)

    def _query(self, opcode: int, extra_length: int = 1) -> bytes:
        """
        Run a fixed-opcode query and return its variable-length reply.

        The reply is [ N | N + extra_length bytes | ACK ]. GET and GET_ID
        both report the number of following bytes minus one. The trailing
        ACK is left for the next drain.
        """
        name = COMMAND_NAMES.get(opcode, f"0x{opcode:02X}")
        self.send_command(opcode)
        if not self.await_ack(self.timeouts.command, name):
            raise CommandRejected(opcode)
        length = self._read_exact(1, self.timeouts.command, name)[0] + extra_length
        return self._read_exact(length, self.timeouts.bulk_read(length), name)

    # ------------------------------------------------------------------
    # Session state machine
    # ------------------------------------------------------------------

    def _strap_boot0(self, bootloader: bool) -> None:
        self.boot0_line.write(bootloader)
        if self.boot1_line is not None:
            self.boot1_line.write(False)

    def enter_bootloader(self) -> None:
        """
        Reset the target into system memory and synchronize the USART.

        Raises:
            BootloaderEntryFailed: If the init byte is not ACKed
        """
        logger.info("Entering system bootloader")
        self.active = False
        self._forget_device()

        self.reset_line.write(False)
        self._strap_boot0(True)
        self._sleep(self.timeouts.reset_pulse)
        self.reset_line.write(True)
        self._sleep(self.timeouts.connect_settle)
        # Release the strap so the next plain reset boots the application
        self.boot0_line.write(False)

        self.drain_input()
        self._send(bytes([INIT_BYTE]))
        self._sleep(self.timeouts.uart_settle)
        reply = self._poll_byte(self.timeouts.command)
        if reply != ACK:
            raise BootloaderEntryFailed(reply)

        self.active = True
        logger.info("Bootloader active")

    def reset(self) -> None:
        """Reset the target into its application. Does not re-enter the bootloader."""
        logger.info("Resetting target to application")
        self.active = False
        self._forget_device()
        self.reset_line.write(False)
        self._strap_boot0(False)
        self._sleep(self.timeouts.reset_pulse)
        self.reset_line.write(True)

    def _ensure_active(self) -> None:
        if not self.active:
            self.enter_bootloader()

    def go(self, address: Optional[int] = None) -> None:
        """
        Jump to `address` (default: flash base). The bootloader exits on success.

        Raises:
            CommandRejected: If GO itself is NACKed (readout protection)
            InvalidAddress: If the jump address is NACKed
        """
        if address is None:
            address = self.flash_base
        self._ensure_active()
        self.send_command(CMD_GO)
        if not self.await_ack(self.timeouts.command, "Go"):
            raise CommandRejected(CMD_GO)
        self._send(address_frame(address))
        if not self.await_ack(self.timeouts.command, "Go address"):
            raise InvalidAddress(address)

        logger.info(f"Jumped to 0x{address:08X}")
        self.active = False
        self._pointer = self.flash_base

    def get_device_info(self) -> DeviceInfo:
        """Bootloader version and supported commands (GET), cached per reset."""
        self._ensure_active()
        if self._device_info is None:
            reply = self._query(CMD_GET)
            version = reply[0]
            commands = tuple(dict.fromkeys(reply[1:]))
            self._device_info = DeviceInfo(
                bootloader_version=(version >> 4, version & 0x0F),
                supported_commands=commands,
            )
            logger.info(
                f"Bootloader v{self._device_info.version_string}, commands: "
                + " ".join(f"{c:02X}" for c in commands)
            )
        return self._device_info

    def get_product_id(self) -> int:
        """16-bit product ID (GET_ID), cached per reset."""
        self._ensure_active()
        if self._product_id is None:
            reply = self._query(CMD_GET_ID)
            self._product_id = int.from_bytes(reply, "big") & 0xFFFF
            logger.info(f"Product ID: 0x{self._product_id:04X}")
        return self._product_id

    # ------------------------------------------------------------------
    # Memory pointer
    # ------------------------------------------------------------------

    def get_memory_pointer(self) -> int:
        """Next write position, relative to the flash base."""
        return self._pointer - self.flash_base

    def set_memory_pointer(self, offset: int) -> None:
        """Move the next write position to `offset` bytes past the flash base."""
        self._pointer = self.flash_base + offset

    # ------------------------------------------------------------------
    # Memory read/write
    # ------------------------------------------------------------------

    def read_memory(self, address: int, length: int) -> bytes:
        """
        Read up to 255 bytes at absolute `address`.

        Raises:
            InvalidAddress: If the address is NACKed
            ReadProtected: If the command or length stage is NACKed
            AckTimeout: If the data does not arrive in time
        """
        self._ensure_active()
        length = clamp_read_length(length)

        self.send_command(CMD_READ_MEMORY)
        if not self.await_ack(self.timeouts.command, "Read Memory"):
            raise ReadProtected(address, length)
        self._send(address_frame(address))
        if not self.await_ack(self.timeouts.command, "Read address"):
            raise InvalidAddress(address)
        self._send(read_length_frame(length))
        if not self.await_ack(self.timeouts.command, "Read length"):
            raise ReadProtected(address, length)

        data = self._read_exact(length, self.timeouts.bulk_read(length), "Read data")
        logger.debug(f"Read {len(data)} bytes at 0x{address:08X}")
        return data

    def write_memory(self, data: bytes, address: Optional[int] = None) -> int:
        """
        Write `data` starting at absolute `address` (default: memory pointer).

        Data of any length is sent in 256-byte transactions; the pointer
        advances after each one. On failure the pointer is left at the end
        of the last chunk the target accepted.

        Returns:
            Number of bytes written

        Raises:
            InvalidAddress: If a chunk address is NACKed
            WriteFailed: If a write command or data frame is NACKed
        """
        self._ensure_active()
        if address is not None:
            self._pointer = address

        data = bytes(data)
        for chunk in chunk_data(data):
            current = self._pointer
            self.send_command(CMD_WRITE_MEMORY)
            if not self.await_ack(self.timeouts.command, "Write Memory"):
                raise WriteFailed(current)
            self._send(address_frame(current))
            if not self.await_ack(self.timeouts.command, "Write address"):
                raise InvalidAddress(current)
            self._send(write_data_frame(chunk))
            if not self.await_ack(self.timeouts.write, "Write data"):
                raise WriteFailed(current)
            self._pointer += len(chunk)
            logger.debug(f"Wrote {len(chunk)} bytes at 0x{current:08X}")

        return len(data)

    # ------------------------------------------------------------------
    # Erase
    # ------------------------------------------------------------------

    def _erase(self, opcode: int, frame: bytes, description: str) -> None:
        self._ensure_active()
        self._pointer = self.flash_base
        name = COMMAND_NAMES[opcode]

        logger.info(f"{name}: {description}")
        self.send_command(opcode)
        if not self.await_ack(self.timeouts.command, name):
            raise EraseFailed(f"{name} command rejected")
        self._send(frame)
        if not self.await_ack(self.timeouts.erase, f"{name} ({description})"):
            raise EraseFailed(f"{name} of {description} failed")

    def erase_legacy(self, page_codes: Iterable[int]) -> None:
        """Erase the listed pages with the one-byte Erase command (0x43)."""
        codes = list(page_codes)
        if not codes:
            raise ValueError("No pages given to erase")
        self._erase(CMD_ERASE, legacy_page_frame(codes), f"{len(codes)} page(s)")

    def erase_all_legacy(self) -> None:
        """Global erase with the one-byte Erase command (0x43)."""
        self._erase(CMD_ERASE, ERASE_ALL_LEGACY, "all pages")

    def erase_extended(self, page_codes: Iterable[int]) -> None:
        """Erase the listed pages with Extended Erase (0x44)."""
        codes = list(page_codes)
        if not codes:
            raise ValueError("No pages given to erase")
        self._erase(CMD_EXTENDED_ERASE, extended_page_frame(codes), f"{len(codes)} page(s)")

    def erase_mass_extended(self) -> None:
        self._erase(CMD_EXTENDED_ERASE, ERASE_MASS_EXTENDED, "mass erase")

    def erase_bank1_extended(self) -> None:
        self._erase(CMD_EXTENDED_ERASE, ERASE_BANK1_EXTENDED, "bank 1")

    def erase_bank2_extended(self) -> None:
        self._erase(CMD_EXTENDED_ERASE, ERASE_BANK2_EXTENDED, "bank 2")

    # ------------------------------------------------------------------
    # Protection
    # ------------------------------------------------------------------

    def _change_protection(
        self,
        opcode: int,
        payload: Optional[bytes] = None,
        rewind_pointer: bool = False,
    ) -> None:
        """
        Run a protection command, then follow the target through the
        system reset it performs once the option bytes are reprogrammed.
        """
        self._ensure_active()
        name = COMMAND_NAMES[opcode]

        logger.info(name)
        self.send_command(opcode)
        if not self.await_ack(self.timeouts.command, name):
            raise ProtectionFailed(f"{name} command rejected")
        if payload is not None:
            self._send(payload)
        if not self.await_ack(self.timeouts.protection, name):
            raise ProtectionFailed(f"{name} not applied")

        logger.info(f"{name} applied, target is resetting")
        self.active = False
        self._forget_device()
        self._sleep(self.timeouts.connect_settle)
        self.enter_bootloader()
        if rewind_pointer:
            self._pointer = self.flash_base

    def set_write_protection(self, sector_codes: Iterable[int]) -> None:
        """Write-protect the listed flash sectors."""
        codes = list(sector_codes)
        self._change_protection(CMD_WRITE_PROTECT, write_protect_frame(codes))

    def clear_write_protection(self) -> None:
        """Remove write protection from all sectors."""
        self._change_protection(CMD_WRITE_UNPROTECT, rewind_pointer=True)

    def set_read_protection(self) -> None:
        """Enable readout protection."""
        self._change_protection(CMD_READOUT_PROTECT)

    def clear_read_protection(self) -> None:
        """Disable readout protection. The target mass-erases its flash."""
        self._change_protection(CMD_READOUT_UNPROTECT, rewind_pointer=True)
