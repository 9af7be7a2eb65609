import pytest
from pymongo.errors import OperationFailure, ServerSelectionTimeoutError

from database import DocumentStore, to_public
from errors import PlatformError


class FlakyCollection:
    def __init__(self, failures, error=ServerSelectionTimeoutError("no servers")):
        self.failures = failures
        self.error = error
        self.inserted = []

    def _maybe_fail(self):
        if self.failures:
            self.failures -= 1
            raise self.error

    def insert_one(self, doc):
        self._maybe_fail()
        self.inserted.append(doc)

    def find(self, filter):
        self._maybe_fail()
        return FlakyCursor(list(self.inserted))


class FlakyCursor(list):
    def sort(self, keys):
        return self


class FlakyDatabase:
    name = "flaky"

    def __init__(self, collection):
        self.collection = collection

    def __getitem__(self, name):
        return self.collection


def test_create_sets_string_id_and_timestamps(store):
    doc_id = store.create_document("users", {"email": "a@student.ie.edu", "display_name": "A"})
    doc = store.get_document("users", doc_id)
    assert isinstance(doc_id, str)
    assert doc["created_at"].tzinfo is not None


def test_create_keeps_given_id(store):
    assert store.create_document("classes", {"name": "X"}, doc_id="cls_1") == "cls_1"
    assert store.get_document("classes", "cls_1")["name"] == "X"


def test_to_public_exposes_id_and_hides_password():
    out = to_public({"_id": "u1", "email": "a@student.ie.edu", "password_hash": "x"})
    assert out == {"id": "u1", "email": "a@student.ie.edu"}


def test_watch_pushes_current_results_then_changes(store):
    pushes = []
    store.watch("chats", {"participants": "u1"}, pushes.append)
    store.create_document("chats", {"participants": ["u1", "u2"]}, doc_id="c1")
    store.create_document("chats", {"participants": ["u3", "u4"]}, doc_id="c2")

    assert [[d["_id"] for d in p] for p in pushes] == [[], ["c1"], ["c1"]]


def test_cancelled_subscription_gets_no_more_pushes(store):
    pushes = []
    sub = store.watch("messages", {"chat_id": "c1"}, pushes.append)
    sub.cancel()
    store.create_document("messages", {"chat_id": "c1", "text": "hi"})

    assert len(pushes) == 1
    assert store.live_query_count("messages") == 0


def test_write_from_listener_is_delivered_after_current_round(store):
    events = []

    def on_chats(docs):
        events.append(("chats", len(docs)))
        if docs and not store.count_documents("messages"):
            store.create_document("messages", {"chat_id": docs[0]["_id"], "text": "auto"})
            events.append(("wrote", None))

    store.watch("chats", {}, on_chats)
    store.watch("messages", {}, lambda docs: events.append(("messages", len(docs))))
    events.clear()

    store.create_document("chats", {"participants": ["u1"]})

    assert events == [("chats", 1), ("wrote", None), ("messages", 1)]


def test_failing_listener_does_not_fail_the_write(store):
    store.watch("users", {}, lambda docs: 1 / 0)
    assert store.create_document("users", {"display_name": "A"})


def test_connection_failures_become_platform_errors():
    store = DocumentStore(FlakyDatabase(FlakyCollection(failures=1)))
    with pytest.raises(PlatformError):
        store.create_document("users", {"display_name": "A"})


def test_connection_failures_are_retried_when_configured():
    collection = FlakyCollection(failures=1)
    store = DocumentStore(FlakyDatabase(collection), retries=1)
    store.create_document("users", {"display_name": "A"})
    assert len(collection.inserted) == 1


def test_other_driver_errors_are_not_retried():
    collection = FlakyCollection(failures=1, error=OperationFailure("bad query"))
    store = DocumentStore(FlakyDatabase(collection), retries=3)
    with pytest.raises(PlatformError):
        store.get_documents("users")


def test_watch_reports_failures_to_on_error():
    errors = []
    store = DocumentStore(FlakyDatabase(FlakyCollection(failures=1)))
    store.watch("users", {}, lambda docs: None, on_error=errors.append)
    assert len(errors) == 1
    assert isinstance(errors[0], PlatformError)
