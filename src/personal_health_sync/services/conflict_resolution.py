"""
Last-writer-wins conflict resolution.

Concurrent edits to the same logical record are not merged: the version
with the strictly greater ``lastModified`` survives, and on a tie the
record already stored is kept.
"""

from typing import Any

from personal_health_sync.domain.sync import LAST_MODIFIED_FIELD
from personal_health_sync.utils.timezone_utils import now_millis


def resolve_last_writer_wins(
    existing: dict[str, Any] | None,
    incoming: dict[str, Any],
    now: int | None = None,
) -> dict[str, Any]:
    """
    Pick the surviving version of a record.

    Args:
        existing: Record currently stored, or None.
        incoming: Record being applied.
        now: Timestamp assumed for an incoming record without lastModified.

    Returns:
        The winning record (one of the two arguments, unchanged).
    """
    if existing is None:
        return incoming

    existing_time = existing.get(LAST_MODIFIED_FIELD) or 0
    incoming_time = incoming.get(LAST_MODIFIED_FIELD)
    if incoming_time is None:
        incoming_time = now if now is not None else now_millis()

    if incoming_time > existing_time:
        return incoming
    return existing


def apply_record(
    records: list[dict[str, Any]],
    incoming: dict[str, Any],
    key_field: str = "id",
) -> tuple[list[dict[str, Any]], bool]:
    """
    Apply an incoming record to a collection keyed by ``key_field``.

    Args:
        records: Current collection; not modified.
        incoming: Record to apply; must carry ``key_field``.
        key_field: Name of the logical key.

    Returns:
        Tuple of (resulting collection, whether the incoming record was stored).

    Raises:
        KeyError: If the incoming record has no logical key.
    """
    key = incoming[key_field]
    result = list(records)

    for index, record in enumerate(result):
        if record.get(key_field) == key:
            winner = resolve_last_writer_wins(record, incoming)
            if winner is record:
                return result, False
            result[index] = incoming
            return result, True

    result.append(incoming)
    return result, True
