"""Token naming convention.

    TNFT_V1_{CAT}_REG_{id}             category token
    TNFT_V1_{CAT}_ULT_{id}             forged from one category
    TNFT_V1_MAST_{id}                  forged from distinct categories
    TNFT_V1_SEAS_{SEASON}_ULT_{id}     forged from one season
"""

from __future__ import annotations

import re

PREFIX = "TNFT_V1"

CATEGORY_CODES: dict[str, str] = {
    "arts": "ARTS",
    "entertainment": "ENT",
    "geography": "GEO",
    "history": "HIST",
    "mythology": "MYTH",
    "nature": "NAT",
    "science": "SCI",
    "sports": "SPORT",
    "technology": "TECH",
    "weird-wonderful": "WEIRD",
}


def category_code(category_id: str) -> str:
    """Short code for a category slug; unknown slugs fall back to their first letters."""
    code = CATEGORY_CODES.get(category_id)
    if code:
        return code
    return re.sub(r"[^A-Z0-9]", "", category_id.upper())[:5] or "CAT"


def short_id(item_id: str) -> str:
    """First 8 hex characters of a UUID-style id."""
    return item_id.replace("-", "")[:8].lower()


def regular_name(category_id: str, item_id: str) -> str:
    return f"{PREFIX}_{category_code(category_id)}_REG_{short_id(item_id)}"


def ultimate_name(category_id: str, item_id: str) -> str:
    return f"{PREFIX}_{category_code(category_id)}_ULT_{short_id(item_id)}"


def master_name(item_id: str) -> str:
    return f"{PREFIX}_MAST_{short_id(item_id)}"


def seasonal_name(season_code: str, item_id: str) -> str:
    return f"{PREFIX}_SEAS_{season_code}_ULT_{short_id(item_id)}"
