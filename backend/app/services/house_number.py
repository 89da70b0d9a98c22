from __future__ import annotations

from typing import Optional

from app.core.config import get_settings


def decode_house_number(
    amount: Optional[str],
    *,
    min_house: Optional[int] = None,
    max_house: Optional[int] = None,
) -> Optional[int]:
    """Infer the house number encoded in the cents of a payment amount.

    Residents pay e.g. ``1500.15`` for house 15. A single fractional digit counts as tens
    (``.4`` -> 40), two digits are literal (``.04`` -> 4). Returns ``None`` when the amount
    has no fractional part, three or more fractional digits, or a value of zero or outside
    the configured house range.
    """
    if min_house is None or max_house is None:
        settings = get_settings()
        min_house = settings.house_number_min if min_house is None else min_house
        max_house = settings.house_number_max if max_house is None else max_house

    if not amount:
        return None
    parts = str(amount).strip().split(".")
    if len(parts) != 2:
        return None

    cents = parts[1]
    if not cents.isdigit() or len(cents) > 2:
        return None

    value = int(cents) * 10 if len(cents) == 1 else int(cents)
    if value == 0 or value > max_house or value < min_house:
        return None
    return value
