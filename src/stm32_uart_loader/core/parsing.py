"""
Centralized parsing helpers for addresses, lengths and page lists.
"""

from typing import List, Optional


def parse_int(value: Optional[str]) -> Optional[int]:
    """
    Parse an integer from string, supporting multiple formats.

    Accepts:
        - Decimal: "4096"
        - Hex with 0x prefix: "0x08000000" or "0X1000"
        - Hex with h suffix: "1000h" or "1000H"
        - None or blank for "not given"

    Raises:
        ValueError: If value cannot be parsed.
    """
    if value is None:
        return None

    value = value.strip().replace("_", "")
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            return int(value, 16)
        if value.lower().endswith("h"):
            return int(value[:-1], 16)
        return int(value)
    except ValueError:
        raise ValueError(
            f"Invalid number '{value}'. Use decimal (4096), hex (0x1000), or suffix (1000h)."
        )


def parse_page_list(value: str) -> List[int]:
    """
    Parse a page/sector list such as "0-3,7,0x10".

    Ranges are inclusive. Duplicates are dropped, order is preserved.

    Raises:
        ValueError: If the list is empty or malformed.
    """
    pages: List[int] = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start_str, end_str = part.split("-", 1)
            start, end = parse_int(start_str), parse_int(end_str)
            if start is None or end is None or end < start:
                raise ValueError(f"Invalid page range '{part}'")
            pages.extend(range(start, end + 1))
        else:
            page = parse_int(part)
            if page is None:
                raise ValueError(f"Invalid page '{part}'")
            pages.append(page)

    if not pages:
        raise ValueError("Page list is empty")
    if any(page < 0 for page in pages):
        raise ValueError("Page numbers must not be negative")
    return list(dict.fromkeys(pages))
