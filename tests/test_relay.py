import pytest

from eventstore.errors import DuplicateEventError, EventStoreError
from eventstore.nostr import Event, Filter
from eventstore.relay import RelayWrapper, is_older
from eventstore.slicestore import SliceStore
from eventstore.store import Store

ALICE = "aa" * 32
BOB = "bb" * 32


class RecordingStore(Store):
    def __init__(self, save_error=None, query_error=None, delete_error=None):
        self.save_error = save_error
        self.query_error = query_error
        self.delete_error = delete_error
        self.events = []
        self.deleted = []

    def init(self):
        pass

    def close(self):
        pass

    def query_events(self, filter):
        if self.query_error is not None:
            raise self.query_error
        return iter([e for e in self.events if filter.matches(e)])

    def delete_event(self, event):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(event)

    def save_event(self, event):
        if self.save_error is not None:
            raise self.save_error
        self.events.append(event)


@pytest.fixture
def relay():
    store = SliceStore()
    store.init()
    return RelayWrapper(store)


def test_is_older_by_timestamp():
    assert is_older(Event(created_at=1), Event(created_at=2))
    assert not is_older(Event(created_at=2), Event(created_at=1))


def test_is_older_same_timestamp_compares_ids():
    assert is_older(Event(id="b", created_at=5), Event(id="a", created_at=5))
    assert not is_older(Event(id="a", created_at=5), Event(id="b", created_at=5))
    assert not is_older(Event(id="a", created_at=5), Event(id="a", created_at=5))


def test_ephemeral_events_are_not_stored(relay):
    relay.publish(Event(id="1", pubkey=ALICE, created_at=1, kind=20001))
    assert relay.query_sync(Filter()) == []


def test_regular_events_accumulate(relay):
    first = Event(id="1", pubkey=ALICE, created_at=1, kind=1)
    second = Event(id="2", pubkey=ALICE, created_at=2, kind=1)
    relay.publish(first)
    relay.publish(second)
    assert relay.query_sync(Filter()) == [second, first]


def test_replaceable_event_replaces_older(relay):
    old = Event(id="1", pubkey=ALICE, created_at=1, kind=0)
    new = Event(id="2", pubkey=ALICE, created_at=2, kind=0)
    relay.publish(old)
    relay.publish(new)
    assert relay.query_sync(Filter()) == [new]


def test_replaceable_event_keeps_other_authors(relay):
    alice = Event(id="1", pubkey=ALICE, created_at=1, kind=10002)
    bob = Event(id="2", pubkey=BOB, created_at=2, kind=10002)
    relay.publish(alice)
    relay.publish(bob)
    assert relay.query_sync(Filter()) == [bob, alice]


def test_older_replaceable_does_not_remove_newer(relay):
    new = Event(id="2", pubkey=ALICE, created_at=2, kind=3)
    old = Event(id="1", pubkey=ALICE, created_at=1, kind=3)
    relay.publish(new)
    relay.publish(old)
    assert relay.query_sync(Filter()) == [new, old]


def test_parameterized_replaceable_by_d_tag(relay):
    a1 = Event(id="1", pubkey=ALICE, created_at=1, kind=30023, tags=[["d", "a"]])
    b1 = Event(id="2", pubkey=ALICE, created_at=2, kind=30023, tags=[["d", "b"]])
    a2 = Event(id="3", pubkey=ALICE, created_at=3, kind=30023, tags=[["d", "a"]])
    for event in (a1, b1, a2):
        relay.publish(event)
    assert relay.query_sync(Filter()) == [a2, b1]


def test_duplicate_error_is_ignored():
    store = RecordingStore(save_error=DuplicateEventError())
    RelayWrapper(store).publish(Event(id="1", kind=1))
    assert store.events == []


def test_save_error_is_wrapped():
    cause = RuntimeError("disk full")
    store = RecordingStore(save_error=cause)
    with pytest.raises(EventStoreError) as info:
        RelayWrapper(store).publish(Event(id="1", kind=1))
    assert info.value.__cause__ is cause


def test_query_error_before_replacing_is_wrapped():
    store = RecordingStore(query_error=RuntimeError("boom"))
    with pytest.raises(EventStoreError, match="failed to query before replacing"):
        RelayWrapper(store).publish(Event(id="1", pubkey=ALICE, kind=0))


def test_delete_error_is_wrapped():
    store = RecordingStore(delete_error=RuntimeError("boom"))
    store.events.append(Event(id="1", pubkey=ALICE, created_at=1, kind=0))
    with pytest.raises(EventStoreError, match="failed to delete event for replacing"):
        RelayWrapper(store).publish(Event(id="2", pubkey=ALICE, created_at=2, kind=0))


def test_parameterized_without_d_tag_deletes_nothing():
    store = RecordingStore()
    store.events.append(Event(id="1", pubkey=ALICE, created_at=1, kind=30000))
    RelayWrapper(store).publish(Event(id="2", pubkey=ALICE, created_at=2, kind=30000))
    assert store.deleted == []
    assert len(store.events) == 2


def test_query_sync_wraps_errors():
    store = RecordingStore(query_error=RuntimeError("boom"))
    with pytest.raises(EventStoreError, match="failed to query"):
        RelayWrapper(store).query_sync(Filter())