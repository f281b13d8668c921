"""
Form submission client — appends one record to the form's response sheet.

The record's four fields are paired positionally with the resolved entry ids
(1st id ↔ label, 2nd ↔ threshold, 3rd ↔ percentage, 4th ↔ score) and sent
as a URL-form-encoded body: POST first, then the same body as a GET query
string if the POST is rejected.

Failures never raise: submit() always returns a SubmitResult.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union
from urllib.parse import urlencode

import requests

from sheet_relay.entry_ids import ENTRY_ID_COUNT, EntryIdResolver
from sheet_relay.form_links import form_submit_url

logger = logging.getLogger("sheet_relay")

# ── Error kinds ───────────────────────────────────────────────────────────
ERR_INVALID_LINK      = "InvalidLink"
ERR_MISSING_ENTRY_IDS = "MissingEntryIds"
ERR_TRANSPORT         = "TransportFailure"
ERR_CONFIG_MISSING    = "ConfigMissing"

MSG_INVALID_LINK = "Use the form's share link (Send → link icon), not the edit address."
MSG_MISSING_ENTRY_IDS = (
    "Use a pre-filled link: form ⋮ → Get pre-filled link → fill each field → Get link → paste here."
)
MSG_CONFIG_MISSING = "Set the form link first (main.py set-link <url>)."

Number = Union[int, float]


@dataclass(frozen=True)
class Record:
    """One spreadsheet row. Field order is the order entry ids are paired in."""

    label: Optional[str] = None
    threshold: Optional[Number] = None
    percentage: Optional[Number] = None
    score: Optional[Number] = None

    def values(self) -> tuple:
        return (self.label, self.threshold, self.percentage, self.score)


@dataclass(frozen=True)
class SubmitResult:
    ok: bool
    error: Optional[str] = None
    kind: Optional[str] = None

    @classmethod
    def failure(cls, kind: str, error: str) -> "SubmitResult":
        return cls(ok=False, error=error, kind=kind)


def build_form_fields(entry_ids: List[str], record: Record) -> List[Tuple[str, str]]:
    """Pair entry ids with record values in order. None becomes ""."""
    if len(entry_ids) < ENTRY_ID_COUNT:
        raise ValueError(f"need {ENTRY_ID_COUNT} entry ids, got {len(entry_ids)}")
    return [
        (f"entry.{entry_id}", "" if value is None else str(value))
        for entry_id, value in zip(entry_ids[:ENTRY_ID_COUNT], record.values())
    ]


def encode_form_body(entry_ids: List[str], record: Record) -> str:
    return urlencode(build_form_fields(entry_ids, record))


class FormClient:
    """Submit records to a form's formResponse endpoint."""

    def __init__(
        self,
        resolver: EntryIdResolver,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 15,
    ):
        self._resolver = resolver
        self._session = session or requests.Session()
        self._timeout = timeout

    @property
    def resolver(self) -> EntryIdResolver:
        return self._resolver

    def submit(self, view_url: str, record: Record) -> SubmitResult:
        submit_url = form_submit_url(view_url)
        if not submit_url:
            logger.warning(f"  [submit] No formResponse endpoint derivable from {view_url!r}")
            return SubmitResult.failure(ERR_INVALID_LINK, MSG_INVALID_LINK)

        entry_ids = self._resolver.resolve(view_url)
        if not entry_ids or len(entry_ids) < ENTRY_ID_COUNT:
            return SubmitResult.failure(ERR_MISSING_ENTRY_IDS, MSG_MISSING_ENTRY_IDS)

        body = encode_form_body(entry_ids, record)

        # Primary: POST
        try:
            r = self._session.post(
                submit_url,
                data=body,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._timeout,
            )
            if r.ok:
                logger.info(f"  [submit] Added {record.label!r} via POST")
                return SubmitResult(ok=True)
            logger.info(f"  [submit] POST rejected (HTTP {r.status_code}), retrying as GET…")
        except requests.RequestException as exc:
            logger.info(f"  [submit] POST failed ({exc}), retrying as GET…")

        # Fallback: GET with the body as query string
        get_url = submit_url + ("&" if "?" in submit_url else "?") + body
        try:
            r = self._session.get(get_url, timeout=self._timeout)
        except requests.RequestException as exc:
            logger.warning(f"  [submit] GET fallback failed: {exc}")
            return SubmitResult.failure(ERR_TRANSPORT, str(exc) or "Form submit failed")

        if r.ok:
            logger.info(f"  [submit] Added {record.label!r} via GET")
            return SubmitResult(ok=True)
        logger.warning(f"  [submit] GET fallback rejected (HTTP {r.status_code})")
        return SubmitResult.failure(ERR_TRANSPORT, f"Form submit failed (HTTP {r.status_code})")
