import pytest

from eventstore.nostr import Event, Filter

PUBKEY = "ab" * 32
EVENT_ID = "cd" * 32


def make_event(**overrides):
    values = dict(
        id=EVENT_ID,
        pubkey=PUBKEY,
        created_at=1700000000,
        kind=1,
        tags=[["e", "x" * 64], ["d", "slug-1"]],
        content="hello",
        sig="ef" * 64,
    )
    values.update(overrides)
    return Event(**values)


def test_event_dict_round_trip():
    event = make_event()
    assert Event.from_dict(event.to_dict()) == event


def test_event_json_round_trip():
    event = make_event(content="ünïcode")
    assert Event.from_json(event.to_json()) == event


def test_event_str_is_json():
    event = make_event()
    assert Event.from_json(str(event)) == event


def test_event_from_empty_dict_uses_defaults():
    assert Event.from_dict({}) == Event()


def test_event_from_json_rejects_bad_json():
    with pytest.raises(ValueError):
        Event.from_json("{not json")


def test_event_from_json_rejects_non_object():
    with pytest.raises(ValueError):
        Event.from_json("[1, 2]")


def test_event_from_dict_rejects_bad_kind():
    with pytest.raises(ValueError):
        Event.from_dict({"kind": "one"})


def test_event_from_dict_rejects_bad_tags():
    with pytest.raises(ValueError):
        Event.from_dict({"tags": [["e", 5]]})


def test_first_tag_prefix_match():
    event = make_event()
    assert event.first_tag(["d", ""]) == ["d", "slug-1"]
    assert event.first_tag(["d", "slug"]) == ["d", "slug-1"]


def test_first_tag_missing():
    event = make_event()
    assert event.first_tag(["p", ""]) is None
    assert event.first_tag(["d", "other"]) is None


def test_filter_round_trip():
    f = Filter(
        ids=[EVENT_ID],
        kinds=[0, 1],
        authors=[PUBKEY],
        tags={"e": ["abc"], "p": ["aaa", "bbb"]},
        since=10,
        until=20,
        limit=5,
        search="stuff",
    )
    assert Filter.from_json(f.to_json()) == f
    assert Filter.from_dict(f.to_dict()) == f


def test_filter_tag_keys_use_hash_prefix():
    f = Filter(tags={"e": ["abc"]})
    assert f.to_dict()["#e"] == ["abc"]
    assert Filter.from_json('{"#e": ["abc"]}').tags == {"e": ["abc"]}


def test_empty_filter_serialises_to_empty_object():
    assert Filter().to_dict() == {}
    assert str(Filter()) == "{}"


def test_filter_from_json_rejects_bad_kinds():
    with pytest.raises(ValueError):
        Filter.from_json('{"kinds": ["x"]}')


def test_filter_from_json_rejects_non_object():
    with pytest.raises(ValueError):
        Filter.from_json('"text"')


def test_empty_filter_matches_everything():
    assert Filter().matches(make_event())


def test_filter_does_not_match_none():
    assert not Filter().matches(None)


def test_filter_matches_fields():
    event = make_event()
    assert Filter(ids=[EVENT_ID]).matches(event)
    assert not Filter(ids=["00" * 32]).matches(event)
    assert Filter(kinds=[1, 7]).matches(event)
    assert not Filter(kinds=[7]).matches(event)
    assert Filter(authors=[PUBKEY]).matches(event)
    assert not Filter(authors=["00" * 32]).matches(event)


def test_filter_empty_list_matches_nothing():
    assert not Filter(kinds=[]).matches(make_event())


def test_filter_matches_tags():
    event = make_event()
    assert Filter(tags={"d": ["slug-1", "slug-2"]}).matches(event)
    assert not Filter(tags={"d": ["slug-2"]}).matches(event)
    assert not Filter(tags={"p": ["slug-1"]}).matches(event)


def test_filter_time_bounds_are_inclusive():
    event = make_event(created_at=100)
    assert Filter(since=100, until=100).matches(event)
    assert not Filter(since=101).matches(event)
    assert not Filter(until=99).matches(event)