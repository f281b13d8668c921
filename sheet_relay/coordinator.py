"""
Tab Coordinator — tracks worker pages opened on behalf of an origin page.

Lifecycle per worker:  opened ──complete()──> closed   (no retry, no reopen)

Three classes:
  TabCoordinator         — worker ↔ origin bookkeeping, persisted in the store
  PlaywrightTabTransport — opens/messages/closes pages in a Playwright BrowserContext
  NullTabTransport       — no-op drop-in when no browser is attached

Usage:
    coordinator = TabCoordinator(store, PlaywrightTabTransport(context))

    worker_id = coordinator.open_worker(origin_id, "MATH 126", url)
    ... worker scrapes and submits ...
    coordinator.complete(worker_id, "MATH 126")   # notifies origin, closes worker
"""

import itertools
import logging
import threading
from typing import Optional

from playwright.sync_api import BrowserContext, Error as PlaywrightError, Page

from sheet_relay.storage import KEY_PENDING
from sheet_relay.utils import poll_until

logger = logging.getLogger("sheet_relay")

# ── Message types sent to page contexts ───────────────────────────────────
MSG_WORKER_COMPLETED = "workerCompleted"


class TabCoordinator:
    """
    Maps each open worker to the origin that asked for it.

    The pending map lives in the store under "pending_workers":
    {
      "<worker_id>": {"origin_id": <origin id>, "label": "MATH 126"},
      ...
    }

    An entry is consumed by the first complete() that sees it. Updates are
    read-modify-write on the store and are not atomic across callers.
    """

    def __init__(self, store, transport):
        self._store = store
        self._transport = transport

    @property
    def transport(self):
        return self._transport

    # ── Public API ────────────────────────────────────────────────────────

    def open_worker(self, origin_id, label: str, target_location: str) -> Optional[str]:
        """
        Open a worker page at target_location and remember who asked for it.

        Returns the worker id, or None if the transport could not open one.
        The pending entry is only stored when both ids are known.
        """
        worker_id = self._transport.open(target_location)
        if worker_id is None:
            logger.warning(f"  [coord] Transport opened no worker for {target_location[-50:]}")
            return None

        if origin_id is None:
            logger.debug(f"  [coord] Worker {worker_id} opened without an origin — not tracked")
            return worker_id

        pending = self.pending()
        pending[str(worker_id)] = {"origin_id": origin_id, "label": label}
        self._store.set(KEY_PENDING, pending)
        logger.info(f"  [coord] Opened worker {worker_id} for {label!r} (origin {origin_id})")
        return worker_id

    def complete(self, worker_id, label: Optional[str] = None) -> bool:
        """
        Finish a worker: notify its origin (once), then close it (always).

        Returns True if a pending entry was consumed by this call.
        """
        pending = self.pending()
        entry = pending.pop(str(worker_id), None)

        if entry is not None:
            self._store.set(KEY_PENDING, pending)
            self._notify(entry.get("origin_id"), label or entry.get("label"))
        else:
            logger.debug(f"  [coord] Worker {worker_id} not pending — nothing to notify")

        self._close(worker_id)
        return entry is not None

    def pending(self) -> dict:
        stored = self._store.get(KEY_PENDING)
        return dict(stored) if isinstance(stored, dict) else {}

    # ── Private helpers ───────────────────────────────────────────────────

    def _notify(self, origin_id, label) -> None:
        """Best-effort completion message to the origin page."""
        if origin_id is None:
            return
        try:
            self._transport.send(origin_id, {"type": MSG_WORKER_COMPLETED, "label": label})
            logger.info(f"  [coord] Told origin {origin_id} that {label!r} was added")
        except Exception as exc:
            logger.debug(f"  [coord] Could not notify origin {origin_id}: {exc}")

    def _close(self, worker_id) -> None:
        try:
            self._transport.close(worker_id)
        except Exception as exc:
            logger.debug(f"  [coord] Close of worker {worker_id} failed (already closed?): {exc}")


# ═════════════════════════════════════════════════════════════════════════
#  PlaywrightTabTransport — pages in a live browser context
# ═════════════════════════════════════════════════════════════════════════

# Pages are SPAs — domcontentloaded is enough; networkidle is unreliable.
WAIT_STRATEGY = "domcontentloaded"
NAV_TIMEOUT = 60_000

# Page-side listeners subscribe with window.addEventListener("sheet-relay", …)
PAGE_EVENT = "sheet-relay"
_DISPATCH_JS = (
    "([name, detail]) => window.dispatchEvent(new CustomEvent(name, { detail }))"
)


class PlaywrightTabTransport:
    """
    Tab transport over a Playwright BrowserContext.

    Every page the broker knows about (origins included) gets a string id
    via register(); open() registers the worker pages it creates.
    """

    def __init__(
        self,
        context: BrowserContext,
        *,
        nav_timeout: int = NAV_TIMEOUT,
        poll_interval: float = 0.3,
        wait_timeout: float = 10,
    ):
        self._context = context
        self._nav_timeout = nav_timeout
        self._poll_interval = poll_interval
        self._wait_timeout = wait_timeout
        self._pages: dict[str, Page] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def register(self, page: Page) -> str:
        """Assign an id to a page so it can be messaged and closed by id."""
        with self._lock:
            for existing_id, existing in list(self._pages.items()):
                if existing is page:
                    return existing_id
                if existing.is_closed():
                    # Closed by the user rather than through close()
                    del self._pages[existing_id]
            page_id = str(next(self._ids))
            self._pages[page_id] = page
        return page_id

    def page(self, page_id) -> Optional[Page]:
        with self._lock:
            return self._pages.get(str(page_id))

    def open(self, location: str) -> str:
        page = self._context.new_page()
        page_id = self.register(page)
        try:
            page.goto(location, wait_until=WAIT_STRATEGY, timeout=self._nav_timeout)
        except PlaywrightError as exc:
            # The tab exists either way; the worker reports what it could scrape.
            logger.warning(f"  [tabs] Navigation of page {page_id} to {location[-50:]} failed: {exc}")
        logger.debug(f"  [tabs] Opened page {page_id} → {location[-50:]}")
        return page_id

    def send(self, page_id, message: dict) -> None:
        page = self.page(page_id)
        if page is None or page.is_closed():
            raise LookupError(f"page {page_id} is not open")
        page.evaluate(_DISPATCH_JS, [PAGE_EVENT, message])

    def close(self, page_id) -> None:
        with self._lock:
            page = self._pages.pop(str(page_id), None)
        if page is None or page.is_closed():
            return
        page.close()
        logger.debug(f"  [tabs] Closed page {page_id}")

    def wait_for(self, page_id, selector: str, timeout: Optional[float] = None) -> bool:
        """
        Poll a page until `selector` matches, for at most `timeout` seconds
        (default: the transport's wait_timeout).

        Returns False on timeout (or if the page is gone) instead of raising.
        """
        page = self.page(page_id)
        if page is None:
            return False

        def _present() -> bool:
            if page.is_closed():
                return False
            return page.query_selector(selector) is not None

        if timeout is None:
            timeout = self._wait_timeout
        return bool(poll_until(_present, timeout, self._poll_interval))

    def pump(self, interval_ms: int = 500) -> None:
        """
        Block until every page in the context is closed.

        Sync Playwright only dispatches binding callbacks while it is waiting
        on something, so this waits on whichever page is still open.
        """
        while True:
            live = [p for p in self._context.pages if not p.is_closed()]
            if not live:
                return
            try:
                live[0].wait_for_timeout(interval_ms)
            except PlaywrightError as exc:
                # The page closed mid-wait; the next pass picks another one.
                logger.debug(f"  [tabs] Page closed while waiting: {exc}")


# ═════════════════════════════════════════════════════════════════════════
#  NullTabTransport — no-op drop-in when no browser is attached
# ═════════════════════════════════════════════════════════════════════════

class NullTabTransport:
    """
    Transport that does nothing.

    Used by CLI commands that never open tabs. open() yields no worker,
    so openWorker requests report ok=False instead of pretending.
    """

    def open(self, location: str) -> Optional[str]:
        return None

    def send(self, page_id, message: dict) -> None:
        pass

    def close(self, page_id) -> None:
        pass
