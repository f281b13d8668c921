"""
Entry-ID resolver — discovers the four `entry.<digits>` field identifiers a
form expects, and caches them against the form's canonical link.

Resolution order (first success wins):
  1. cached set for the same base URL         (no network)
  2. entry.N keys in the pasted URL's query    (pre-filled link, no network)
  3. GET the blank form and scan its HTML      (strict markers, then loose)

Usage:
    resolver = EntryIdResolver(store)
    ids = resolver.resolve(form_url)   # ["111", "222", "333", "444"] or None
"""

import logging
import re
from typing import Callable, List, Optional
from urllib.parse import parse_qsl, urlsplit

import requests

from sheet_relay.form_links import form_base_url
from sheet_relay.storage import KEY_ENTRY_IDS, KEY_ENTRY_IDS_BASE

logger = logging.getLogger("sheet_relay")

ENTRY_ID_COUNT = 4

_PREFILLED_KEY = re.compile(r"^entry\.(\d+)$", re.IGNORECASE)
_STRICT_MARKER = re.compile(r'name="entry\.(\d+)"')
_LOOSE_MARKER = re.compile(r"entry\.(\d+)")


def parse_prefilled_entry_ids(url: str) -> List[str]:
    """Return the first 4 entry ids from a pre-filled link's query, in key order, or []."""
    try:
        query = urlsplit(url).query
    except ValueError:
        return []
    ids = []
    for key, _ in parse_qsl(query, keep_blank_values=True):
        m = _PREFILLED_KEY.match(key)
        if m:
            ids.append(m.group(1))
    return ids[:ENTRY_ID_COUNT] if len(ids) >= ENTRY_ID_COUNT else []


def scan_entry_ids_from_html(html: str) -> List[str]:
    """
    Find entry ids in a form page.

    Strict pass: every name="entry.N" attribute, in document order. If that
    yields fewer than 4, start over with a loose pass over any entry.N
    mention (scripts, data blobs), deduplicated, stopping at 4.
    """
    ids = _STRICT_MARKER.findall(html or "")
    if len(ids) >= ENTRY_ID_COUNT:
        return ids

    ids = []
    seen = set()
    for m in _LOOSE_MARKER.finditer(html or ""):
        value = m.group(1)
        if value in seen:
            continue
        seen.add(value)
        ids.append(value)
        if len(ids) >= ENTRY_ID_COUNT:
            break
    return ids


class EntryIdResolver:
    """
    Cache-or-discover lookup of a form's entry ids.

    The cache holds exactly one set (4 ids) plus the base URL it was
    resolved against; it is dropped by invalidate() whenever the configured
    form link changes.
    """

    def __init__(
        self,
        store,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 15,
        html_scanner: Callable[[str], List[str]] = scan_entry_ids_from_html,
    ):
        self._store = store
        self._session = session or requests.Session()
        self._timeout = timeout
        self._scan = html_scanner

    # ── Public API ────────────────────────────────────────────────────────

    def resolve(self, view_url: str) -> Optional[List[str]]:
        """Return 4 entry ids for the form, or None if every strategy came up short."""
        base = form_base_url(view_url)
        if not base:
            return None

        cached = self.cached(base)
        if cached:
            logger.debug(f"  [resolve] Cache hit for {base[-40:]}")
            return cached

        from_prefilled = parse_prefilled_entry_ids(view_url)
        if len(from_prefilled) >= ENTRY_ID_COUNT:
            logger.info(f"  [resolve] Entry ids read from pre-filled link: {from_prefilled}")
            return self._remember(base, from_prefilled)

        from_html = self._fetch_and_scan(base)
        if len(from_html) >= ENTRY_ID_COUNT:
            logger.info(f"  [resolve] Entry ids scraped from form page: {from_html[:ENTRY_ID_COUNT]}")
            return self._remember(base, from_html)

        logger.warning(
            f"  [resolve] Found {len(from_html)} of {ENTRY_ID_COUNT} entry ids for {base[-40:]} — giving up"
        )
        return None

    def cached(self, base: str) -> Optional[List[str]]:
        """Return the cached ids if they were resolved against `base`."""
        ids = self._store.get(KEY_ENTRY_IDS)
        if self._store.get(KEY_ENTRY_IDS_BASE) != base:
            return None
        if not isinstance(ids, list) or len(ids) < ENTRY_ID_COUNT:
            return None
        return [str(i) for i in ids[:ENTRY_ID_COUNT]]

    def invalidate(self) -> None:
        """Forget the cached ids (the form link changed)."""
        self._store.remove(KEY_ENTRY_IDS, KEY_ENTRY_IDS_BASE)
        logger.debug("  [resolve] Entry id cache cleared")

    # ── Private helpers ───────────────────────────────────────────────────

    def _remember(self, base: str, ids: List[str]) -> List[str]:
        ids = list(ids[:ENTRY_ID_COUNT])
        self._store.set(KEY_ENTRY_IDS, ids)
        self._store.set(KEY_ENTRY_IDS_BASE, base)
        return ids

    def _fetch_and_scan(self, base: str) -> List[str]:
        """GET the blank form and scan it. Network errors yield []."""
        try:
            r = self._session.get(base, timeout=self._timeout)
            html = r.text
        except requests.RequestException as exc:
            logger.warning(f"  [resolve] Could not fetch form page {base[-40:]}: {exc}")
            return []
        return self._scan(html)
