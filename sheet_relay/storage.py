"""
Key-value state store — the broker's persisted state.

Two classes:
  JsonFileStore — real implementation backed by a JSON file + filelock
  MemoryStore   — in-process dict, for tests and throwaway runs

Both expose get / set / remove. Each call is individually locked; a
get-then-set sequence is NOT atomic, so two messages updating the same
key at once can still interleave.
"""

import copy
import json
import logging
import os
import threading

from filelock import FileLock

logger = logging.getLogger("sheet_relay")

# ── Persisted keys ────────────────────────────────────────────────────────
KEY_FORM_URL       = "form_url"
KEY_ENTRY_IDS      = "form_entry_ids"
KEY_ENTRY_IDS_BASE = "form_entry_ids_base"
KEY_ADDED_RECORDS  = "added_records"
KEY_PENDING        = "pending_workers"
KEY_THRESHOLD      = "threshold"


class MemoryStore:
    """Dict-backed store. Values are deep-copied in and out, like a round-trip to disk."""

    def __init__(self, initial: dict = None):
        self._data: dict = copy.deepcopy(initial) if initial else {}
        self._lock = threading.Lock()

    def get(self, key: str, default=None):
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def remove(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def snapshot(self) -> dict:
        with self._lock:
            return copy.deepcopy(self._data)


class JsonFileStore:
    """
    Store persisted to a single JSON object on disk.

    The file has this structure:
    {
      "form_url":            "https://docs.google.com/forms/d/e/.../viewform?...",
      "form_entry_ids":      ["111", "222", "333", "444"],
      "form_entry_ids_base": "https://docs.google.com/forms/d/e/.../viewform",
      "added_records":       ["MATH 126", ...],
      "pending_workers":     {"3": {"origin_id": "1", "label": "MATH 126"}},
      "threshold":           3.8
    }

    Writes go to a temp file first and are then renamed over the original.
    """

    def __init__(self, filepath: str, lock_timeout: int = 30):
        self._filepath = filepath
        self._lockpath = filepath + ".lock"
        directory = os.path.dirname(filepath)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self._lock = FileLock(self._lockpath, timeout=lock_timeout)

    @property
    def path(self) -> str:
        return self._filepath

    # ── Public API ────────────────────────────────────────────────────────

    def get(self, key: str, default=None):
        with self._lock:
            data = self._read()
        return data.get(key, default)

    def set(self, key: str, value) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove(self, *keys: str) -> None:
        with self._lock:
            data = self._read()
            changed = False
            for key in keys:
                if key in data:
                    del data[key]
                    changed = True
            if changed:
                self._write(data)

    def snapshot(self) -> dict:
        with self._lock:
            return self._read()

    # ── Private helpers ───────────────────────────────────────────────────

    def _read(self) -> dict:
        """Read and return the current state. Caller holds lock."""
        if not os.path.exists(self._filepath):
            return {}
        try:
            with open(self._filepath, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError):
            logger.warning(f"State file corrupt or unreadable — starting fresh: {self._filepath}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"State file does not hold an object — starting fresh: {self._filepath}")
            return {}
        return data

    def _write(self, data: dict) -> None:
        """Write state atomically. Caller holds lock."""
        tmp = self._filepath + ".tmp"
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, self._filepath)
        except OSError as e:
            logger.warning(f"Failed to write state file: {e}")
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise
