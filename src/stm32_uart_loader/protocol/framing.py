"""
STM32 USART bootloader frame construction.

Reference: ST AN3155 "USART protocol used in the STM32 bootloader".

Every frame ends with a one-byte checksum:
- Command frames:  [ opcode | ~opcode ]
- Address frames:  [ a31..a24 | a23..a16 | a15..a8 | a7..a0 | XOR ]
- Write data:      [ N-1 | data (N bytes) | XOR over all previous bytes ]
- Read length:     [ N | ~N ]
- Page lists:      [ count | codes... | XOR ]   (1 or 2 bytes per field)

Functions here are pure; nothing touches the transport.
"""

import struct
from typing import Iterable, List

from stm32_uart_loader.config import MAX_READ_LENGTH, MAX_WRITE_CHUNK

# Command opcodes
CMD_GET = 0x00
CMD_GET_VERSION = 0x01
CMD_GET_ID = 0x02
CMD_READ_MEMORY = 0x11
CMD_GO = 0x21
CMD_WRITE_MEMORY = 0x31
CMD_ERASE = 0x43
CMD_EXTENDED_ERASE = 0x44
CMD_WRITE_PROTECT = 0x63
CMD_WRITE_UNPROTECT = 0x73
CMD_READOUT_PROTECT = 0x82
CMD_READOUT_UNPROTECT = 0x92

COMMAND_NAMES = {
    CMD_GET: "Get",
    CMD_GET_VERSION: "Get Version",
    CMD_GET_ID: "Get ID",
    CMD_READ_MEMORY: "Read Memory",
    CMD_GO: "Go",
    CMD_WRITE_MEMORY: "Write Memory",
    CMD_ERASE: "Erase",
    CMD_EXTENDED_ERASE: "Extended Erase",
    CMD_WRITE_PROTECT: "Write Protect",
    CMD_WRITE_UNPROTECT: "Write Unprotect",
    CMD_READOUT_PROTECT: "Readout Protect",
    CMD_READOUT_UNPROTECT: "Readout Unprotect",
}

# Fixed erase payloads (checksum included)
ERASE_ALL_LEGACY = bytes([0xFF, 0x00])
ERASE_MASS_EXTENDED = bytes([0xFF, 0xFF, 0x00])
ERASE_BANK1_EXTENDED = bytes([0xFF, 0xFE, 0x01])
ERASE_BANK2_EXTENDED = bytes([0xFF, 0xFD, 0x02])


def xor_checksum(data: Iterable[int]) -> int:
    """Cumulative XOR of all bytes."""
    checksum = 0
    for byte in data:
        checksum ^= byte
    return checksum


def append_checksum(buffer: bytearray) -> bytearray:
    """
    Append the XOR of every byte already in `buffer` as its final byte.

    Must be called once the whole payload has been written into the buffer.
    The buffer is modified in place and returned for chaining.
    """
    buffer.append(xor_checksum(buffer))
    return buffer


def command_frame(opcode: int) -> bytes:
    """Opcode followed by its one's complement."""
    return bytes([opcode & 0xFF, (~opcode) & 0xFF])


def address_frame(address: int) -> bytes:
    """4-byte big-endian address plus XOR checksum."""
    frame = bytearray(struct.pack(">I", address & 0xFFFFFFFF))
    return bytes(append_checksum(frame))


def clamp_read_length(length: int) -> int:
    """Clamp a requested read length into the single-byte field range."""
    return max(0, min(length, MAX_READ_LENGTH))


def read_length_frame(length: int) -> bytes:
    """Length byte (clamped to 0..255) plus its one's complement."""
    value = clamp_read_length(length)
    return bytes([value, (~value) & 0xFF])


def write_data_frame(chunk: bytes) -> bytes:
    """
    Build the data stage of a Write Memory exchange.

    Args:
        chunk: 1..256 payload bytes

    Returns:
        [len-1 | chunk | XOR]
    """
    if not 1 <= len(chunk) <= MAX_WRITE_CHUNK:
        raise ValueError(
            f"Write chunk must be 1..{MAX_WRITE_CHUNK} bytes, got {len(chunk)}"
        )
    frame = bytearray([len(chunk) - 1])
    frame.extend(chunk)
    return bytes(append_checksum(frame))


def legacy_page_frame(page_codes: List[int]) -> bytes:
    """
    Erase (0x43) page list: N-1, one byte per page, checksum.

    At most 255 pages fit; a count byte of 0xFF is the global erase.
    """
    if not page_codes:
        raise ValueError("Erase needs at least one page code")
    if len(page_codes) > 0xFF:
        raise ValueError(
            f"Erase takes at most 255 pages at once, got {len(page_codes)}"
        )
    frame = bytearray([len(page_codes) - 1])
    frame.extend(code & 0xFF for code in page_codes)
    return bytes(append_checksum(frame))



def extended_page_frame(page_codes: List[int]) -> bytes:
    """
    Extended Erase (0x44) page list.

    The device erases N+1 pages for a declared count of N, so the count
    field carries len(page_codes) - 1. All fields are 16-bit big-endian.
    """
    if not page_codes:
        raise ValueError("Extended erase needs at least one page code")
    frame = bytearray(struct.pack(">H", (len(page_codes) - 1) & 0xFFFF))
    for code in page_codes:
        frame.extend(struct.pack(">H", code & 0xFFFF))
    return bytes(append_checksum(frame))


def write_protect_frame(sector_codes: List[int]) -> bytes:
    """Write Protect (0x63) sector list: N-1, one byte per sector, checksum."""
    if not sector_codes:
        raise ValueError("Write protection needs at least one sector code")
    frame = bytearray([(len(sector_codes) - 1) & 0xFF])
    frame.extend(code & 0xFF for code in sector_codes)
    return bytes(append_checksum(frame))


def chunk_data(data: bytes, chunk_size: int = MAX_WRITE_CHUNK) -> List[bytes]:
    """Split `data` into consecutive chunks of at most `chunk_size` bytes."""
    return [data[offset:offset + chunk_size] for offset in range(0, len(data), chunk_size)]
