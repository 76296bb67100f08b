"""
Exceptions raised by the bootloader driver.

Every protocol failure is raised where it is detected and carries the
structured detail (address, length, received byte) needed by callers to
decide whether to resume, retry, or abandon a transfer. No retries happen
inside the driver.
"""

from typing import Optional


class BootloaderError(Exception):
    """Base exception for all bootloader driver errors"""
    pass


class TransportError(BootloaderError):
    """Serial port could not be opened, read, or written"""
    pass


class AckTimeout(BootloaderError):
    """No ACK/NACK (or expected data) arrived within the timeout"""

    def __init__(self, timeout: float, stage: str = ""):
        self.timeout = timeout
        self.stage = stage
        where = f" during {stage}" if stage else ""
        super().__init__(f"No response within {timeout:.3f}s{where}")


class BootloaderEntryFailed(BootloaderError):
    """Target did not acknowledge the bootloader init byte"""

    def __init__(self, received: Optional[int]):
        self.received = received
        if received is None:
            detail = "no reply"
        else:
            detail = f"got 0x{received:02X}"
        super().__init__(f"Bootloader entry failed ({detail})")


class CommandRejected(BootloaderError):
    """Target NACKed a command byte"""

    def __init__(self, opcode: int):
        self.opcode = opcode
        super().__init__(f"Command 0x{opcode:02X} rejected by bootloader")


class InvalidAddress(BootloaderError):
    """Target NACKed an address frame"""

    def __init__(self, address: int):
        self.address = address
        super().__init__(f"Address 0x{address:08X} rejected by bootloader")


class ReadProtected(BootloaderError):
    """Target refused a read (readout protection active)"""

    def __init__(self, address: int, length: int):
        self.address = address
        self.length = length
        super().__init__(
            f"Read of {length} bytes at 0x{address:08X} refused "
            f"(readout protection?)"
        )


class WriteFailed(BootloaderError):
    """Target NACKed a write command or data frame"""

    def __init__(self, address: int):
        self.address = address
        super().__init__(f"Write at 0x{address:08X} failed")


class EraseFailed(BootloaderError):
    """Target NACKed an erase command or page list"""
    pass


class ProtectionFailed(BootloaderError):
    """Target NACKed a write/readout protection change"""
    pass
