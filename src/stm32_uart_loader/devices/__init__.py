"""
Device registry for STM32 parts.

Maps GET_ID product IDs to names, flash geometry and erase command.
"""

from .registry import (
    DeviceProfile,
    EraseMode,
    list_devices,
    get_device,
    describe_product,
)

__all__ = [
    "DeviceProfile",
    "EraseMode",
    "list_devices",
    "get_device",
    "describe_product",
]
