import pytest

from sheet_relay.broker import Broker, build_broker, coerce_threshold
from sheet_relay.coordinator import MSG_WORKER_COMPLETED, TabCoordinator
from sheet_relay.entry_ids import EntryIdResolver
from sheet_relay.form_client import FormClient
from sheet_relay.storage import (
    KEY_ADDED_RECORDS,
    KEY_ENTRY_IDS,
    KEY_ENTRY_IDS_BASE,
    KEY_FORM_URL,
    JsonFileStore,
)

VIEW = "https://docs.google.com/forms/d/e/ABC/viewform"
PREFILLED = VIEW + "?usp=pp_url&entry.111=a&entry.222=b&entry.333=c&entry.444=d"
TARGET = "https://dawgpath.uw.edu/course?id=MATH%20126"


@pytest.fixture()
def make_broker(store, transport, stub_session):
    def factory(handler=lambda request: (200, "ok")):
        session, adapter = stub_session(handler)
        resolver = EntryIdResolver(store, session=session)
        broker = Broker(store, FormClient(resolver, session=session), TabCoordinator(store, transport))
        return broker, adapter

    return factory


def _submit(broker, label="MATH 126", sender="w1"):
    return broker.handle(
        {"type": "submitRecord", "label": label, "threshold": 3.8, "percentage": 42.5, "score": 1.1},
        sender,
    )


def test_full_worker_round_trip(make_broker, store, transport):
    broker, adapter = make_broker()
    broker.handle({"type": "setFormLink", "formUrl": PREFILLED})

    assert broker.handle({"type": "checkAlreadyRecorded", "label": "MATH 126"}) == {"added": False}
    assert broker.handle({"type": "openWorker", "label": "MATH 126", "targetLocation": TARGET}, "origin-1") == {"ok": True}
    worker_id = transport.opened[0][0]

    assert _submit(broker, sender=worker_id) == {"ok": True, "formOk": True, "formError": None}
    assert broker.handle({"type": "completeWorker", "label": "MATH 126"}, worker_id) == {"ok": True}

    assert transport.sent == [("origin-1", {"type": MSG_WORKER_COMPLETED, "label": "MATH 126"})]
    assert transport.closed == [worker_id]
    assert broker.handle({"type": "checkAlreadyRecorded", "label": " MATH 126 "}) == {"added": True}
    assert [r.method for r in adapter.requests] == ["POST"]


def test_submit_without_form_link(make_broker, store):
    broker, adapter = make_broker()

    response = _submit(broker)

    assert response["ok"] is True
    assert response["formOk"] is False
    assert "form link" in response["formError"]
    assert adapter.requests == []
    assert store.get(KEY_ADDED_RECORDS) is None


def test_failed_submit_is_not_recorded(make_broker, store):
    broker, _ = make_broker(lambda request: (500, ""))
    broker.handle({"type": "setFormLink", "formUrl": PREFILLED})

    response = _submit(broker)

    assert response["formOk"] is False
    assert "500" in response["formError"]
    assert broker.handle({"type": "checkAlreadyRecorded", "label": "MATH 126"}) == {"added": False}


def test_set_form_link_invalidates_cached_ids(make_broker, store):
    broker, _ = make_broker()
    store.set(KEY_ENTRY_IDS, ["1", "2", "3", "4"])
    store.set(KEY_ENTRY_IDS_BASE, VIEW)

    assert broker.handle({"type": "setFormLink", "formUrl": f"  {PREFILLED} "}) == {"ok": True}

    assert store.get(KEY_FORM_URL) == PREFILLED
    assert store.get(KEY_ENTRY_IDS) is None
    assert store.get(KEY_ENTRY_IDS_BASE) is None


def test_set_empty_form_link_clears_it(make_broker, store):
    broker, _ = make_broker()
    broker.handle({"type": "setFormLink", "formUrl": PREFILLED})
    broker.handle({"type": "setFormLink", "formUrl": "   "})

    assert store.get(KEY_FORM_URL) is None
    assert broker.handle({"type": "getSettings"})["formUrl"] is None


def test_test_link_reports_field_count(make_broker):
    broker, adapter = make_broker()

    assert broker.handle({"type": "testLink", "formUrl": PREFILLED}) == {
        "ok": True,
        "message": "Form link OK. 4 fields found.",
    }
    assert adapter.requests == []


def test_test_link_errors(make_broker):
    broker, _ = make_broker(lambda request: (200, "<html></html>"))

    empty = broker.handle({"type": "testLink", "formUrl": "  "})
    not_a_form = broker.handle({"type": "testLink", "formUrl": "https://forms.gle/abc"})
    no_fields = broker.handle({"type": "testLink", "formUrl": VIEW})

    assert empty == {"ok": False, "error": "Paste a form URL first."}
    assert not_a_form["ok"] is False and "edit address" in not_a_form["error"]
    assert no_fields["ok"] is False and "pre-filled link" in no_fields["error"]


def test_open_worker_requires_location(make_broker, transport):
    broker, _ = make_broker()

    response = broker.handle({"type": "openWorker", "label": "MATH 126"}, "origin-1")

    assert response["ok"] is False
    assert transport.opened == []


def test_complete_worker_requires_sender(make_broker):
    broker, _ = make_broker()

    assert broker.handle({"type": "completeWorker", "label": "MATH 126"})["ok"] is False


def test_threshold_settings(make_broker):
    broker, _ = make_broker()

    assert broker.handle({"type": "getSettings"}) == {"ok": True, "formUrl": None, "threshold": 3.8}
    assert broker.handle({"type": "setThreshold", "threshold": "3.5"}) == {"ok": True, "threshold": 3.5}
    assert broker.handle({"type": "getSettings"})["threshold"] == 3.5
    assert broker.handle({"type": "setThreshold", "threshold": "abc"}) == {"ok": True, "threshold": 3.8}


@pytest.mark.parametrize(
    "value, expected",
    [(0, 0.0), (4.0, 4.0), ("2.7", 2.7), (None, 3.8), (float("nan"), 3.8), (4.5, 3.8), (-1, 3.8), (True, 3.8)],
)
def test_coerce_threshold(value, expected):
    assert coerce_threshold(value) == expected


def test_unknown_and_malformed_messages(make_broker):
    broker, _ = make_broker()

    assert broker.handle({"type": "nope"}) == {"ok": False, "error": "Unknown message type: nope"}
    assert broker.handle(["not", "a", "dict"])["ok"] is False


def test_handler_exceptions_become_error_results(make_broker, transport):
    broker, _ = make_broker()

    def explode(location):
        raise RuntimeError("browser crashed")

    transport.open = explode

    assert broker.handle({"type": "openWorker", "label": "X", "targetLocation": TARGET}, "o") == {
        "ok": False,
        "error": "browser crashed",
    }


def test_build_broker_uses_json_store(tmp_path):
    config = {"store_file": str(tmp_path / "state.json"), "http_timeout": 5}

    broker = build_broker(config)
    broker.handle({"type": "setFormLink", "formUrl": PREFILLED})

    assert isinstance(broker.store, JsonFileStore)
    assert JsonFileStore(str(tmp_path / "state.json")).get(KEY_FORM_URL) == PREFILLED
    assert broker.handle({"type": "openWorker", "label": "X", "targetLocation": TARGET}, "o") == {"ok": False}
