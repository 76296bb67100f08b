"""
Serial transport and control lines for the STM32 USART bootloader.

The session only needs two things from a transport:
- read_byte(): one pending byte as an int, or None when nothing is waiting
- write(data): send a byte string

`SerialTransport` provides them on top of PySerial with the port opened
non-blocking (timeout=0) so that all waiting happens in the session's
deadline-bounded poll loops.

Control lines (reset, BOOT0, BOOT1) only need write(level). The usual
USB-UART adapter wiring drives them from RTS/DTR, which is what
`SerialControlLine` does.
"""

import logging
from typing import Optional

try:
    import serial
except ImportError:
    raise ImportError("PySerial required: pip install pyserial")

from stm32_uart_loader.config import DEFAULT_SERIAL, SerialSettings
from stm32_uart_loader.errors import TransportError

logger = logging.getLogger(__name__)


class SerialTransport:
    """
    Non-blocking PySerial transport.

    Example:
        transport = SerialTransport(port="/dev/ttyUSB0")
        transport.open()
        transport.write(b"\\x7F")
        reply = transport.read_byte()
        transport.close()
    """

    def __init__(
        self,
        port: str,
        settings: SerialSettings = DEFAULT_SERIAL,
        write_timeout: float = 1.0,
    ):
        """
        Initialize transport.

        Args:
            port: Serial port (e.g., "/dev/ttyUSB0", "COM3")
            settings: Line settings (default 115200 8E1)
            write_timeout: Blocking write timeout in seconds
        """
        self.port = port
        self.settings = settings
        self.write_timeout = write_timeout
        self.ser: Optional[serial.Serial] = None

    def open(self) -> None:
        """
        Open the serial port with the bootloader's line settings.

        Raises:
            TransportError: If port cannot be opened
        """
        try:
            self.ser = serial.Serial(
                port=self.port,
                baudrate=self.settings.baudrate,
                bytesize=self.settings.bytesize,
                parity=self.settings.parity,
                stopbits=self.settings.stopbits,
                timeout=0,
                write_timeout=self.write_timeout,
                rtscts=False,
                dsrdtr=False,
            )
            self.ser.reset_input_buffer()
            self.ser.reset_output_buffer()

            logger.debug(
                f"Opened {self.port} at {self.settings.baudrate} bps "
                f"({self.settings.bytesize}{self.settings.parity}{self.settings.stopbits})"
            )
        except serial.SerialException as e:
            raise TransportError(f"Cannot open port {self.port}: {e}")

    def close(self) -> None:
        """Close serial port."""
        if self.ser and self.ser.is_open:
            self.ser.close()
            logger.debug(f"Closed {self.port}")

    def __enter__(self) -> "SerialTransport":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_open(self) -> "serial.Serial":
        if not self.ser or not self.ser.is_open:
            raise TransportError("Serial port not open")
        return self.ser

    def write(self, data: bytes) -> None:
        """
        Send raw bytes.

        Raises:
            TransportError: If write fails or is incomplete
        """
        ser = self._require_open()
        try:
            written = ser.write(data)
        except serial.SerialException as e:
            raise TransportError(f"Write error: {e}")
        if written is not None and written != len(data):
            raise TransportError(f"Incomplete write: sent {written}/{len(data)} bytes")

    def read_byte(self) -> Optional[int]:
        """Return one pending byte, or None if nothing has arrived."""
        ser = self._require_open()
        try:
            data = ser.read(1)
        except serial.SerialException as e:
            raise TransportError(f"Read error: {e}")
        if not data:
            return None
        return data[0]


class SerialControlLine:
    """
    Control line driven from a modem line (RTS or DTR) of a SerialTransport.

    PySerial asserting RTS/DTR pulls the adapter pin low on most USB-UART
    chips, so `inverted=True` is the common choice for an active-low reset
    wired straight to RTS.
    """

    def __init__(self, transport: SerialTransport, signal: str = "rts", inverted: bool = False):
        signal = signal.lower()
        if signal not in ("rts", "dtr"):
            raise ValueError(f"Unknown control signal: {signal} (expected rts or dtr)")
        self.transport = transport
        self.signal = signal
        self.inverted = inverted

    def write(self, level: bool) -> None:
        ser = self.transport._require_open()
        value = (not level) if self.inverted else bool(level)
        setattr(ser, self.signal, value)
        logger.debug(f"{self.signal.upper()} <- {int(value)} (line {'high' if level else 'low'})")


class NullLine:
    """Control line that is not wired (strap pins set by hand)."""

    def write(self, level: bool) -> None:
        pass
