"""
Background broker — the single owner of persisted state.

Page contexts never touch the store; they send typed messages and get a
dict back. Every failure is returned as a value ({"ok": False, "error": ...});
nothing raises past handle().

Message types:
  checkAlreadyRecorded {label}                           → {added}
  openWorker           {label, targetLocation}           → {ok}
  submitRecord         {label, threshold, percentage, score}
                                                         → {ok, formOk, formError}
  testLink             {formUrl}                         → {ok, message | error}
  completeWorker       {label}                           → {ok}
  setFormLink          {formUrl}                         → {ok}
  setThreshold         {threshold}                       → {ok, threshold}
  getSettings          {}                                → {ok, formUrl, threshold}
"""

import logging
import math
from typing import Optional

import requests

from sheet_relay.coordinator import NullTabTransport, TabCoordinator
from sheet_relay.dedup import AddedRecords
from sheet_relay.entry_ids import ENTRY_ID_COUNT, EntryIdResolver
from sheet_relay.form_client import (
    ERR_CONFIG_MISSING,
    MSG_CONFIG_MISSING,
    MSG_INVALID_LINK,
    MSG_MISSING_ENTRY_IDS,
    FormClient,
    Record,
    SubmitResult,
)
from sheet_relay.form_links import form_submit_url
from sheet_relay.storage import KEY_FORM_URL, KEY_THRESHOLD, JsonFileStore
from sheet_relay.utils import resolve_store_path

logger = logging.getLogger("sheet_relay")

DEFAULT_THRESHOLD = 3.8
THRESHOLD_MIN = 0.0
THRESHOLD_MAX = 4.0


def coerce_threshold(value, default: float = DEFAULT_THRESHOLD) -> float:
    """Parse a threshold; anything non-numeric, non-finite or outside 0–4.0 becomes `default`."""
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number) or not (THRESHOLD_MIN <= number <= THRESHOLD_MAX):
        return default
    return number


class Broker:
    """Routes page-context messages to the coordinator, tracker and form client."""

    def __init__(
        self,
        store,
        form_client: FormClient,
        coordinator: TabCoordinator,
        *,
        default_threshold: float = DEFAULT_THRESHOLD,
    ):
        self._store = store
        self._form_client = form_client
        self._coordinator = coordinator
        self._added = AddedRecords(store)
        self._default_threshold = default_threshold
        self._handlers = {
            "checkAlreadyRecorded": self._check_already_recorded,
            "openWorker":           self._open_worker,
            "submitRecord":         self._submit_record,
            "testLink":             self._test_link,
            "completeWorker":       self._complete_worker,
            "setFormLink":          self._set_form_link,
            "setThreshold":         self._set_threshold,
            "getSettings":          self._get_settings,
        }

    @property
    def store(self):
        return self._store

    @property
    def coordinator(self) -> TabCoordinator:
        return self._coordinator

    @property
    def added_records(self) -> AddedRecords:
        return self._added

    # ── Entry point ───────────────────────────────────────────────────────

    def handle(self, message: dict, sender_id=None) -> dict:
        """Dispatch one message. sender_id is the page context that sent it."""
        if not isinstance(message, dict):
            return {"ok": False, "error": "Message must be an object"}
        msg_type = message.get("type")
        handler = self._handlers.get(msg_type)
        if handler is None:
            logger.warning(f"  [broker] Unknown message type: {msg_type!r}")
            return {"ok": False, "error": f"Unknown message type: {msg_type}"}
        try:
            return handler(message, sender_id)
        except Exception as exc:
            logger.exception(f"  [broker] {msg_type} failed")
            return {"ok": False, "error": str(exc) or exc.__class__.__name__}

    # ── Settings ──────────────────────────────────────────────────────────

    def form_url(self) -> str:
        return (self._store.get(KEY_FORM_URL) or "").strip()

    def threshold(self) -> float:
        return coerce_threshold(self._store.get(KEY_THRESHOLD), self._default_threshold)

    def set_form_url(self, url: Optional[str]) -> None:
        """Store the form link (or clear it) and drop any cached entry ids."""
        value = (url or "").strip()
        if value:
            self._store.set(KEY_FORM_URL, value)
        else:
            self._store.remove(KEY_FORM_URL)
        self._form_client.resolver.invalidate()
        logger.info(f"  [broker] Form link {'set to ' + value[-50:] if value else 'cleared'}")

    # ── Handlers ──────────────────────────────────────────────────────────

    def _check_already_recorded(self, message: dict, sender_id) -> dict:
        return {"added": self._added.was_recorded(message.get("label"))}

    def _open_worker(self, message: dict, sender_id) -> dict:
        location = (message.get("targetLocation") or "").strip()
        if not location:
            return {"ok": False, "error": "Missing targetLocation"}
        worker_id = self._coordinator.open_worker(sender_id, message.get("label"), location)
        return {"ok": worker_id is not None}

    def _submit_record(self, message: dict, sender_id) -> dict:
        record = Record(
            label=message.get("label"),
            threshold=message.get("threshold"),
            percentage=message.get("percentage"),
            score=message.get("score"),
        )
        form_url = self.form_url()
        if form_url:
            result = self._form_client.submit(form_url, record)
        else:
            result = SubmitResult.failure(ERR_CONFIG_MISSING, MSG_CONFIG_MISSING)

        if result.ok:
            self._added.record(record.label)
        else:
            logger.warning(f"  [broker] Submit of {record.label!r} failed ({result.kind}): {result.error}")

        return {
            "ok": True,
            "formOk": result.ok,
            "formError": None if result.ok else result.error,
        }

    def _test_link(self, message: dict, sender_id) -> dict:
        form_url = (message.get("formUrl") or "").strip()
        if not form_url:
            return {"ok": False, "error": "Paste a form URL first."}
        if not form_submit_url(form_url):
            return {"ok": False, "error": MSG_INVALID_LINK}
        entry_ids = self._form_client.resolver.resolve(form_url)
        if not entry_ids or len(entry_ids) < ENTRY_ID_COUNT:
            return {"ok": False, "error": MSG_MISSING_ENTRY_IDS}
        return {"ok": True, "message": f"Form link OK. {len(entry_ids)} fields found."}

    def _complete_worker(self, message: dict, sender_id) -> dict:
        if sender_id is None:
            return {"ok": False, "error": "completeWorker must come from a worker page"}
        self._coordinator.complete(sender_id, message.get("label"))
        return {"ok": True}

    def _set_form_link(self, message: dict, sender_id) -> dict:
        self.set_form_url(message.get("formUrl"))
        return {"ok": True}

    def _set_threshold(self, message: dict, sender_id) -> dict:
        threshold = coerce_threshold(message.get("threshold"), self._default_threshold)
        self._store.set(KEY_THRESHOLD, threshold)
        return {"ok": True, "threshold": threshold}

    def _get_settings(self, message: dict, sender_id) -> dict:
        return {"ok": True, "formUrl": self.form_url() or None, "threshold": self.threshold()}


# ═════════════════════════════════════════════════════════════════════════

def build_broker(config: dict, transport=None, *, store=None, session=None) -> Broker:
    """
    Build a broker from loaded config.

    Without a transport the broker runs with NullTabTransport: every message
    works except openWorker, which reports ok=False.
    """
    if store is None:
        store = JsonFileStore(resolve_store_path(config))
        logger.info(f"State file: {store.path}")
    if transport is None:
        transport = NullTabTransport()
    session = session or requests.Session()
    timeout = config.get("http_timeout", 15)

    resolver = EntryIdResolver(store, session=session, timeout=timeout)
    form_client = FormClient(resolver, session=session, timeout=timeout)
    coordinator = TabCoordinator(store, transport)
    return Broker(
        store,
        form_client,
        coordinator,
        default_threshold=config.get("default_threshold", DEFAULT_THRESHOLD),
    )
