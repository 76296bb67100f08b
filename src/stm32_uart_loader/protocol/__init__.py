"""Bootloader protocol layer - frame encoding and serial transport."""

from .framing import (
    CMD_GET,
    CMD_GET_VERSION,
    CMD_GET_ID,
    CMD_READ_MEMORY,
    CMD_GO,
    CMD_WRITE_MEMORY,
    CMD_ERASE,
    CMD_EXTENDED_ERASE,
    CMD_WRITE_PROTECT,
    CMD_WRITE_UNPROTECT,
    CMD_READOUT_PROTECT,
    CMD_READOUT_UNPROTECT,
    COMMAND_NAMES,
    xor_checksum,
    append_checksum,
    command_frame,
    address_frame,
    read_length_frame,
    write_data_frame,
    legacy_page_frame,
    extended_page_frame,
    write_protect_frame,
    chunk_data,
)
from .transport import SerialTransport, SerialControlLine, NullLine

__all__ = [
    # Opcodes
    "CMD_GET",
    "CMD_GET_VERSION",
    "CMD_GET_ID",
    "CMD_READ_MEMORY",
    "CMD_GO",
    "CMD_WRITE_MEMORY",
    "CMD_ERASE",
    "CMD_EXTENDED_ERASE",
    "CMD_WRITE_PROTECT",
    "CMD_WRITE_UNPROTECT",
    "CMD_READOUT_PROTECT",
    "CMD_READOUT_UNPROTECT",
    "COMMAND_NAMES",
    # Frames
    "xor_checksum",
    "append_checksum",
    "command_frame",
    "address_frame",
    "read_length_frame",
    "write_data_frame",
    "legacy_page_frame",
    "extended_page_frame",
    "write_protect_frame",
    "chunk_data",
    # Transport
    "SerialTransport",
    "SerialControlLine",
    "NullLine",
]
