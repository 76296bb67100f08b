"""Tests for the device registry."""

from stm32_uart_loader.config import FLASH_BASE
from stm32_uart_loader.devices import (
    EraseMode,
    describe_product,
    get_device,
    list_devices,
)


def test_lookup_known_product():
    profile = get_device(0x0410)
    assert profile is not None
    assert profile.name == "STM32F10xxx Medium-density"
    assert profile.erase_mode is EraseMode.LEGACY
    assert profile.flash_base == FLASH_BASE
    assert profile.flash_end == FLASH_BASE + 128 * 1024


def test_unknown_product():
    assert get_device(0x0FFF) is None
    assert describe_product(0x0FFF) == "Unknown device (PID 0x0FFF)"


def test_list_is_sorted_by_product_id():
    pids = [p.product_id for p in list_devices()]
    assert pids == sorted(pids)
    assert len(pids) == len(set(pids))


def test_to_dict_is_hex_formatted():
    data = get_device(0x0419).to_dict()
    assert data["product_id"] == "0x0419"
    assert data["flash_base"] == "0x08000000"
    assert data["erase_mode"] == "extended"
    assert data["dual_bank"] is True
