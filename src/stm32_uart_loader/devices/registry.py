"""
Device registry for STM32 parts reachable through the USART bootloader.

Provides a single source of truth for:
- Product IDs returned by GET_ID (ST AN2606 "device-dependent bootloader parameters")
- Flash geometry (base, size)
- Which erase command the bootloader implements

Usage:
    from stm32_uart_loader.devices import get_device, describe_product

    profile = get_device(session.get_product_id())
    print(describe_product(0x0410))
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from stm32_uart_loader.config import FLASH_BASE


class EraseMode(Enum):
    """Erase command implemented by the part's bootloader."""
    LEGACY = "legacy"       # 0x43, one-byte page codes
    EXTENDED = "extended"   # 0x44, two-byte page codes, bank/mass sentinels


@dataclass(frozen=True)
class DeviceProfile:
    """Known bootloader parameters for one product ID."""
    product_id: int
    name: str
    flash_size: int
    erase_mode: EraseMode
    flash_base: int = FLASH_BASE
    dual_bank: bool = False

    @property
    def flash_end(self) -> int:
        """Return end address (exclusive)."""
        return self.flash_base + self.flash_size

    def to_dict(self) -> Dict:
        """Convert to JSON-serializable dict."""
        return {
            "product_id": f"0x{self.product_id:04X}",
            "name": self.name,
            "flash_base": f"0x{self.flash_base:08X}",
            "flash_size": self.flash_size,
            "erase_mode": self.erase_mode.value,
            "dual_bank": self.dual_bank,
        }


_REGISTRY: Dict[int, DeviceProfile] = {}


def _register_device(profile: DeviceProfile) -> None:
    """Register a device profile."""
    _REGISTRY[profile.product_id] = profile


def _init_registry() -> None:
    """Initialize the registry with known parts."""
    KiB = 1024
    legacy = EraseMode.LEGACY
    extended = EraseMode.EXTENDED

    # STM32F0
    _register_device(DeviceProfile(0x0440, "STM32F030x8/F05x", 64 * KiB, legacy))
    _register_device(DeviceProfile(0x0442, "STM32F030xC/F09x", 256 * KiB, legacy))
    _register_device(DeviceProfile(0x0444, "STM32F03xx4/6", 32 * KiB, legacy))
    _register_device(DeviceProfile(0x0445, "STM32F04xxx/F070x6", 32 * KiB, legacy))
    _register_device(DeviceProfile(0x0448, "STM32F070xB/F071xx/F072xx", 128 * KiB, legacy))

    # STM32F1
    _register_device(DeviceProfile(0x0412, "STM32F10xxx Low-density", 32 * KiB, legacy))
    _register_device(DeviceProfile(0x0410, "STM32F10xxx Medium-density", 128 * KiB, legacy))
    _register_device(DeviceProfile(0x0414, "STM32F10xxx High-density", 512 * KiB, legacy))
    _register_device(DeviceProfile(0x0420, "STM32F10xxx Medium-density value line", 128 * KiB, legacy))
    _register_device(DeviceProfile(0x0428, "STM32F10xxx High-density value line", 512 * KiB, legacy))
    _register_device(DeviceProfile(0x0418, "STM32F105xx/107xx", 256 * KiB, legacy))
    _register_device(
        DeviceProfile(0x0430, "STM32F10xxx XL-density", 1024 * KiB, legacy, dual_bank=True)
    )

    # STM32F2/F3/F4/F7
    _register_device(DeviceProfile(0x0411, "STM32F2xxxx", 1024 * KiB, extended))
    _register_device(DeviceProfile(0x0422, "STM32F302xB(C)/303xB(C)/358xx", 256 * KiB, extended))
    _register_device(DeviceProfile(0x0432, "STM32F373xx/378xx", 256 * KiB, extended))
    _register_device(DeviceProfile(0x0439, "STM32F301xx/302x4(6/8)/318xx", 64 * KiB, extended))
    _register_device(DeviceProfile(0x0438, "STM32F303x4(6/8)/334xx/328xx", 64 * KiB, extended))
    _register_device(DeviceProfile(0x0446, "STM32F302xD(E)/303xD(E)/398xx", 512 * KiB, extended))
    _register_device(DeviceProfile(0x0413, "STM32F40xxx/41xxx", 1024 * KiB, extended))
    _register_device(
        DeviceProfile(0x0419, "STM32F42xxx/43xxx", 2048 * KiB, extended, dual_bank=True)
    )
    _register_device(DeviceProfile(0x0423, "STM32F401xB(C)", 256 * KiB, extended))
    _register_device(DeviceProfile(0x0433, "STM32F401xD(E)", 512 * KiB, extended))
    _register_device(DeviceProfile(0x0431, "STM32F411xx", 512 * KiB, extended))
    _register_device(DeviceProfile(0x0449, "STM32F74xxx/75xxx", 1024 * KiB, extended))
    _register_device(
        DeviceProfile(0x0451, "STM32F76xxx/77xxx", 2048 * KiB, extended, dual_bank=True)
    )

    # STM32G0/G4/L0/L4/H7
    _register_device(DeviceProfile(0x0460, "STM32G07xxx/08xxx", 128 * KiB, extended))
    _register_device(DeviceProfile(0x0466, "STM32G03xxx/04xxx", 64 * KiB, extended))
    _register_device(DeviceProfile(0x0468, "STM32G431xx/441xx", 128 * KiB, extended))
    _register_device(DeviceProfile(0x0417, "STM32L05xxx/06xxx", 64 * KiB, legacy))
    _register_device(DeviceProfile(0x0457, "STM32L01xxx/02xxx", 16 * KiB, legacy))
    _register_device(DeviceProfile(0x0435, "STM32L43xxx/44xxx", 256 * KiB, extended))
    _register_device(
        DeviceProfile(0x0415, "STM32L47xxx/48xxx", 1024 * KiB, extended, dual_bank=True)
    )
    _register_device(
        DeviceProfile(0x0450, "STM32H74xxx/75xxx", 2048 * KiB, extended, dual_bank=True)
    )


def list_devices() -> List[DeviceProfile]:
    """Return all known profiles ordered by product ID."""
    return [_REGISTRY[pid] for pid in sorted(_REGISTRY)]


def get_device(product_id: int) -> Optional[DeviceProfile]:
    """
    Look up a profile by GET_ID product ID.

    Returns:
        DeviceProfile or None if the part is unknown
    """
    return _REGISTRY.get(product_id)


def describe_product(product_id: int) -> str:
    """Human-readable name for a product ID, known or not."""
    profile = get_device(product_id)
    if profile is None:
        return f"Unknown device (PID 0x{product_id:04X})"
    return f"{profile.name} (PID 0x{product_id:04X})"


_init_registry()
