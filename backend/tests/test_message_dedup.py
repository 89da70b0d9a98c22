"""
Tests for the inbound message id deduplicator.

Covers:
  - First sighting is new, repeats within retention are duplicates
  - Ids become new again after retention and are swept
  - Empty ids are never deduplicated
"""

import pytest

from app.services.message_dedup import MessageDeduplicator


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_seen_within_retention():
    clock = _Clock()
    dedup = MessageDeduplicator(retention_seconds=60, clock=clock)
    assert dedup.seen("wamid.1") is False
    clock.now = 30
    assert dedup.seen("wamid.1") is True
    assert dedup.seen("wamid.2") is False


def test_expires_after_retention():
    clock = _Clock()
    dedup = MessageDeduplicator(retention_seconds=60, clock=clock)
    dedup.seen("wamid.1")
    clock.now = 61
    assert dedup.seen("wamid.1") is False


def test_sweep():
    clock = _Clock()
    dedup = MessageDeduplicator(retention_seconds=60, clock=clock)
    dedup.seen("a")
    clock.now = 50
    dedup.seen("b")
    clock.now = 100
    assert dedup.sweep() == 1
    assert len(dedup) == 1


def test_empty_id_is_never_duplicate():
    dedup = MessageDeduplicator(retention_seconds=60)
    assert dedup.seen("") is False
    assert dedup.seen("") is False
    assert len(dedup) == 0


def test_retention_must_be_positive():
    with pytest.raises(ValueError):
        MessageDeduplicator(retention_seconds=0)
