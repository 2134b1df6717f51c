"""Unit tests for last-writer-wins conflict resolution."""

import pytest

from personal_health_sync.services.conflict_resolution import (
    apply_record,
    resolve_last_writer_wins,
)


def test_newer_incoming_wins() -> None:
    """Test a strictly newer incoming record replaces the existing one."""
    existing = {"id": "m1", "sys": 120, "lastModified": 100}
    incoming = {"id": "m1", "sys": 130, "lastModified": 200}

    winner = resolve_last_writer_wins(existing, incoming)

    if winner is not incoming:
        raise AssertionError(f"Expected incoming record to win, got {winner}")


def test_order_independent_result() -> None:
    """Test applying 100 and 200 in either order stores the 200 version."""
    older = {"id": "m1", "sys": 120, "lastModified": 100}
    newer = {"id": "m1", "sys": 130, "lastModified": 200}

    records, _ = apply_record([], older)
    records, _ = apply_record(records, newer)
    forward = records

    records, _ = apply_record([], newer)
    records, _ = apply_record(records, older)
    backward = records

    if forward != [newer] or backward != [newer]:
        raise AssertionError(f"Expected only the newer record, got {forward} and {backward}")


def test_tie_keeps_existing() -> None:
    """Test equal timestamps keep the record already stored."""
    existing = {"id": "m1", "sys": 120, "lastModified": 150}
    incoming = {"id": "m1", "sys": 999, "lastModified": 150}

    records, stored = apply_record([existing], incoming)

    if stored:
        raise AssertionError("Incoming record should not be stored on a tie")
    if records != [existing]:
        raise AssertionError(f"Expected existing record to be kept, got {records}")


def test_missing_timestamps() -> None:
    """Test missing existing time counts as 0 and missing incoming time as now."""
    existing = {"id": "m1", "sys": 120}
    incoming = {"id": "m1", "sys": 125, "lastModified": 1}

    if resolve_last_writer_wins(existing, incoming) is not incoming:
        raise AssertionError("Record without lastModified should lose to any timestamp")

    stamped = {"id": "m1", "lastModified": 500}
    unstamped = {"id": "m1"}
    if resolve_last_writer_wins(stamped, unstamped, now=1000) is not unstamped:
        raise AssertionError("Unstamped incoming record should be treated as current")
    if resolve_last_writer_wins(stamped, unstamped, now=400) is not stamped:
        raise AssertionError("Unstamped incoming record should lose to a later existing one")


def test_apply_record_does_not_mutate_input() -> None:
    """Test the input collection is left untouched."""
    records = [{"id": "a", "lastModified": 1}]
    original = list(records)

    result, stored = apply_record(records, {"id": "b", "lastModified": 2})

    if not stored:
        raise AssertionError("New key should be stored")
    if records != original:
        raise AssertionError("Input collection was modified")
    if [r["id"] for r in result] != ["a", "b"]:
        raise AssertionError(f"Unexpected result order: {result}")


def test_apply_record_requires_key() -> None:
    """Test an incoming record without its key is refused."""
    with pytest.raises(KeyError):
        apply_record([], {"sys": 120})
