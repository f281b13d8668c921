import sys
from pathlib import Path

import pytest
import requests
from requests.adapters import BaseAdapter

sys.path.append(str(Path(__file__).resolve().parents[1]))

from sheet_relay.storage import MemoryStore


class StubAdapter(BaseAdapter):
    """requests transport adapter that answers from a handler instead of the network.

    The handler receives the PreparedRequest and returns (status, text), or an
    exception instance to raise.
    """

    def __init__(self, handler):
        super().__init__()
        self._handler = handler
        self.requests: list[requests.PreparedRequest] = []

    def send(self, request, **kwargs):
        self.requests.append(request)
        result = self._handler(request)
        if isinstance(result, Exception):
            raise result
        status, text = result
        response = requests.Response()
        response.status_code = status
        response._content = text.encode("utf-8")
        response.encoding = "utf-8"
        response.url = request.url
        response.request = request
        return response

    def close(self):
        pass


def body_text(request: requests.PreparedRequest) -> str:
    body = request.body or ""
    return body.decode("utf-8") if isinstance(body, bytes) else body


class FakeTransport:
    """In-memory tab transport recording every open/send/close."""

    def __init__(self):
        self.opened: list[tuple[str, str]] = []
        self.sent: list[tuple[object, dict]] = []
        self.closed: list[object] = []
        self.fail_send = False
        self._open_ids: set = set()
        self._next = 100

    def open(self, location):
        self._next += 1
        worker_id = str(self._next)
        self.opened.append((worker_id, location))
        self._open_ids.add(worker_id)
        return worker_id

    def send(self, page_id, message):
        if self.fail_send:
            raise LookupError(f"page {page_id} is not open")
        self.sent.append((page_id, message))

    def close(self, page_id):
        self.closed.append(page_id)
        if page_id not in self._open_ids:
            raise LookupError(f"page {page_id} already closed")
        self._open_ids.discard(page_id)


@pytest.fixture()
def store():
    return MemoryStore()


@pytest.fixture()
def stub_session():
    """Return a factory building a requests.Session whose http(s) traffic goes to a handler."""
    sessions = []

    def factory(handler):
        adapter = StubAdapter(handler)
        session = requests.Session()
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        sessions.append(session)
        return session, adapter

    yield factory
    for session in sessions:
        session.close()


@pytest.fixture()
def transport():
    return FakeTransport()
