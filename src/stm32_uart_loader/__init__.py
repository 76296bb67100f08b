"""
stm32-uart-loader - STM32 system bootloader driver over USART

Enter the factory bootloader, read/write/erase flash and toggle
readout/write protection (ST AN3155).
"""

__version__ = "0.1.0"

from stm32_uart_loader.session import BootloaderSession, DeviceInfo
from stm32_uart_loader.protocol import SerialTransport, SerialControlLine, NullLine
from stm32_uart_loader.errors import (
    BootloaderError,
    TransportError,
    AckTimeout,
    BootloaderEntryFailed,
    CommandRejected,
    InvalidAddress,
    ReadProtected,
    WriteFailed,
    EraseFailed,
    ProtectionFailed,
)

__all__ = [
    "BootloaderSession",
    "DeviceInfo",
    "SerialTransport",
    "SerialControlLine",
    "NullLine",
    "BootloaderError",
    "TransportError",
    "AckTimeout",
    "BootloaderEntryFailed",
    "CommandRejected",
    "InvalidAddress",
    "ReadProtected",
    "WriteFailed",
    "EraseFailed",
    "ProtectionFailed",
    "__version__",
]
