"""Added-records tracker: labels already written to the sheet, for the duplicate warning."""

import logging

from sheet_relay.storage import KEY_ADDED_RECORDS

logger = logging.getLogger("sheet_relay")


def _key(label) -> str:
    return str(label if label is not None else "").strip()


class AddedRecords:
    """
    Persisted, append-only set of record labels.

    Comparison is case-sensitive on the trimmed label. record() is a
    read-modify-write on the store and is not atomic across callers.
    """

    def __init__(self, store):
        self._store = store

    def all(self) -> list:
        stored = self._store.get(KEY_ADDED_RECORDS)
        return list(stored) if isinstance(stored, list) else []

    def was_recorded(self, label) -> bool:
        key = _key(label)
        return any(_key(existing) == key for existing in self.all())

    def record(self, label) -> None:
        key = _key(label)
        if not key:
            return
        existing = self.all()
        if any(_key(e) == key for e in existing):
            return
        self._store.set(KEY_ADDED_RECORDS, existing + [key])
        logger.debug(f"  [dedup] Recorded {key!r} ({len(existing) + 1} total)")
