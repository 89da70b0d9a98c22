"""
Tests for decoding the house number from the cents of an amount.

Covers:
  - Single fractional digit counts as tens, two digits are literal
  - No fraction, zero, three or more digits, out of range -> undetermined
  - Configured range bounds
"""

import pytest

from app.services.house_number import decode_house_number


@pytest.mark.parametrize(
    ("amount", "expected"),
    [
        ("1000.1", 10),
        ("1000.4", 40),
        ("1000.04", 4),
        ("1000.15", 15),
        ("1000.66", 66),
        ("500.15", 15),
    ],
)
def test_decodes_house(amount, expected):
    assert decode_house_number(amount) == expected


@pytest.mark.parametrize(
    "amount",
    ["1000.67", "1000.7", "1000.00", "1000.0", "1000", "1000.999", "", None, "abc", "1.000.15", "1000.-5"],
)
def test_undetermined(amount):
    assert decode_house_number(amount) is None


def test_is_deterministic():
    assert decode_house_number("1500.15") == decode_house_number("1500.15") == 15


def test_respects_explicit_range():
    assert decode_house_number("1000.05", min_house=10, max_house=66) is None
    assert decode_house_number("1000.80", min_house=1, max_house=99) == 80
