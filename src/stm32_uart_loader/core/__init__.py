"""
Core module for stm32-uart-loader.

This module provides the workflow layer on top of BootloaderSession:
- Number and page-list parsing (parsing.py)
- Result objects (results.py)
- Identify / dump / erase / program workflows (actions.py)

Front ends should call into this module rather than sequencing protocol
operations themselves.
"""

from .parsing import parse_int, parse_page_list
from .results import OperationResult
from .actions import (
    identify,
    read_memory_range,
    dump_memory,
    erase_flash,
    program_memory,
)

__all__ = [
    # Parsing
    "parse_int",
    "parse_page_list",
    # Results
    "OperationResult",
    # Actions
    "identify",
    "read_memory_range",
    "dump_memory",
    "erase_flash",
    "program_memory",
]
