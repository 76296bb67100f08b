"""
Protocol constants, timeout classes and serial defaults.

Values follow ST AN3155 (USART bootloader protocol) and AN2606 (system
memory boot mode). Sessions accept overrides for anything device- or
wiring-specific.
"""

from dataclasses import dataclass

# Start of on-chip flash on every STM32 family
FLASH_BASE = 0x08000000

# Per-transaction caps imposed by the bootloader
MAX_WRITE_CHUNK = 256
MAX_READ_LENGTH = 255

# Reply bytes
ACK = 0x79
NACK = 0x1F

# Sent once after reset so the bootloader can autobaud and select USART
INIT_BYTE = 0x7F


@dataclass(frozen=True)
class TimeoutProfile:
    """
    Maximum waits (seconds) per operation class.

    Attributes:
        command: ACK after a command byte or address frame
        write: ACK after a write data frame
        erase: ACK after an erase page list (mass erase is slow)
        protection: second ACK of a protection change
        connect_settle: wait after releasing reset into system memory
        uart_settle: wait between init byte and reading the reply
        read_byte: extra allowance per byte of a bulk read
        reset_pulse: how long reset is held low
        poll_interval: sleep between empty polls
    """
    command: float = 0.1
    write: float = 1.0
    erase: float = 30.0
    protection: float = 5.0
    connect_settle: float = 0.5
    uart_settle: float = 0.01
    read_byte: float = 0.01
    reset_pulse: float = 0.01
    poll_interval: float = 0.001

    def bulk_read(self, length: int) -> float:
        """Deadline for reading `length` data bytes after an ACK."""
        return self.command + length * self.read_byte


DEFAULT_TIMEOUTS = TimeoutProfile()


@dataclass(frozen=True)
class SerialSettings:
    """Line settings the bootloader requires (8 data bits, even parity, 1 stop bit)."""
    baudrate: int = 115200
    bytesize: int = 8
    parity: str = "E"
    stopbits: int = 1


DEFAULT_SERIAL = SerialSettings()
