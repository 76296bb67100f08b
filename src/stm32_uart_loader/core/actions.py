"""
Core workflow actions built on a BootloaderSession.

The session exposes single protocol operations; these helpers combine them
into the steps a firmware-update workflow needs (identify, dump, erase,
program + verify) and report through OperationResult.
"""

import hashlib
import logging
from contextlib import contextmanager
from typing import Callable, Iterable, Optional

from stm32_uart_loader.config import MAX_READ_LENGTH, MAX_WRITE_CHUNK
from stm32_uart_loader.devices import describe_product, get_device
from stm32_uart_loader.errors import BootloaderError
from stm32_uart_loader.protocol.framing import CMD_ERASE, COMMAND_NAMES
from stm32_uart_loader.session import BootloaderSession

from .results import OperationResult

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
def _capture_logs(logger_name: str = "stm32_uart_loader"):
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


def _region(address: int, length: int) -> str:
    return f"0x{address:08X}-0x{address + length:08X}"


def identify(session: BootloaderSession) -> OperationResult:
    """
    Query bootloader version, supported commands and product ID.

    Returns:
        OperationResult with:
            - device: part name from the registry
            - metadata["bootloader_version"]: "major.minor"
            - metadata["commands"]: list of supported opcodes
            - metadata["product_id"]: 16-bit product ID
            - metadata["extended_erase"]: whether 0x44 is supported
    """
    with _capture_logs() as logs:
        try:
            info = session.get_device_info()
            pid = session.get_product_id()
        except BootloaderError as e:
            logger.error(f"identify failed: {e}")
            result = OperationResult.failure(operation="identify", error=str(e))
            result.logs = logs
            return result

        result = OperationResult.success(operation="identify", device=describe_product(pid))
        result.metadata["bootloader_version"] = info.version_string
        result.metadata["commands"] = list(info.supported_commands)
        result.metadata["command_names"] = [
            COMMAND_NAMES.get(op, f"0x{op:02X}") for op in info.supported_commands
        ]
        result.metadata["product_id"] = pid
        result.metadata["extended_erase"] = info.extended_erase
        profile = get_device(pid)
        if profile is None:
            result.add_warning(f"Product ID 0x{pid:04X} is not in the device registry")
        else:
            result.metadata["profile"] = profile.to_dict()
        result.logs = logs
        return result


def read_memory_range(
    session: BootloaderSession,
    address: int,
    length: int,
    progress_cb: Optional[Callable[[int, int], None]] = None,
) -> bytes:
    """
    Read `length` bytes from absolute `address` in bootloader-sized reads.

    Raises:
        BootloaderError: On the first failing read
    """
    data = bytearray()
    while len(data) < length:
        count = min(MAX_READ_LENGTH, length - len(data))
        data.extend(session.read_memory(address + len(data), count))
        if progress_cb:
            progress_cb(len(data), length)
    return bytes(data)


def dump_memory(
    session: BootloaderSession,
    address: int,
    length: int,
    progress_cb: Optional[Callable[[int, int], None]] = None,
) -> OperationResult:
    """
    Read a memory region.

    Returns:
        OperationResult with metadata["data"] holding the bytes read
    """
    with _capture_logs() as logs:
        try:
            data = read_memory_range(session, address, length, progress_cb)
        except BootloaderError as e:
            logger.error(f"dump failed: {e}")
            result = OperationResult.failure(
                operation="dump", error=str(e), region=_region(address, length)
            )
            result.logs = logs
            return result

        result = OperationResult.success(
            operation="dump",
            region=_region(address, length),
            bytes_len=len(data),
        )
        result.hashes["sha256"] = hashlib.sha256(data).hexdigest()
        result.metadata["data"] = data
        result.logs = logs
        return result


def erase_flash(
    session: BootloaderSession,
    pages: Optional[Iterable[int]] = None,
) -> OperationResult:
    """
    Erase pages (or everything when `pages` is None).

    Picks Erase (0x43) or Extended Erase (0x44) from the GET command list.
    """
    page_list = list(pages) if pages is not None else None
    with _capture_logs() as logs:
        try:
            info = session.get_device_info()
            if info.extended_erase:
                if page_list is None:
                    session.erase_mass_extended()
                else:
                    session.erase_extended(page_list)
            elif info.supports(CMD_ERASE):
                if page_list is None:
                    session.erase_all_legacy()
                else:
                    session.erase_legacy(page_list)
            else:
                raise BootloaderError("Bootloader advertises no erase command")
        except (BootloaderError, ValueError) as e:
            logger.error(f"erase failed: {e}")
            result = OperationResult.failure(operation="erase", error=str(e))
            result.logs = logs
            return result

        result = OperationResult.success(operation="erase")
        result.metadata["mode"] = "extended" if info.extended_erase else "legacy"
        result.metadata["pages"] = page_list
        result.logs = logs
        return result


def program_memory(
    session: BootloaderSession,
    address: int,
    data: bytes,
    verify: bool = True,
    progress_cb: Optional[Callable[[int, int], None]] = None,
) -> OperationResult:
    """
    Write `data` at absolute `address` and optionally read it back.

    Returns:
        OperationResult with:
            - bytes_len: bytes acknowledged by the target
            - hashes["sha256"]: hash of data
            - metadata["verified"]: whether read-back matched
            - metadata["pointer"]: session pointer (relative) afterwards
    """
    region = _region(address, len(data))
    with _capture_logs() as logs:
        written = 0
        try:
            session.set_memory_pointer(address - session.flash_base)
            for offset in range(0, len(data), MAX_WRITE_CHUNK):
                written += session.write_memory(data[offset:offset + MAX_WRITE_CHUNK])
                if progress_cb:
                    progress_cb(written, len(data))

            verified = False
            if verify:
                readback = read_memory_range(session, address, len(data))
                verified = readback == data
        except BootloaderError as e:
            logger.error(f"program failed after {written} bytes: {e}")
            result = OperationResult.failure(operation="program", error=str(e), region=region)
            result.bytes_len = written
            result.metadata["pointer"] = session.get_memory_pointer()
            result.logs = logs
            return result

        result = OperationResult.success(operation="program", region=region, bytes_len=written)
        result.hashes["sha256"] = hashlib.sha256(data).hexdigest()
        result.metadata["verified"] = verified
        result.metadata["pointer"] = session.get_memory_pointer()
        if verify and not verified:
            mismatch = next(
                (i for i, (a, b) in enumerate(zip(data, readback)) if a != b),
                min(len(data), len(readback)),
            )
            result.add_error(f"Verify mismatch at 0x{address + mismatch:08X}")
        elif not verify:
            result.add_warning("Written data was not verified")
        result.logs = logs
        return result
