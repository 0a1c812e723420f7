import pytest

from parley.history import ConversationStore
from parley.schemas import Message


def test_history_is_bounded_and_keeps_newest():
    store = ConversationStore(max_pairs=3)
    for i in range(10):
        store.append_pair("m", f"q{i}", f"a{i}")
        assert len(store.get("m")) <= 6
    history = store.get("m")
    assert [m.content for m in history] == ["q7", "a7", "q8", "a8", "q9", "a9"]
    assert history[0].role == "user"


def test_single_appends_truncate_from_the_front():
    store = ConversationStore(max_pairs=1)
    store.append("m", "user", "one")
    store.append("m", "assistant", "two")
    store.append("m", "user", "three")
    assert [m.content for m in store.get("m")] == ["two", "three"]


def test_histories_are_isolated_per_model():
    store = ConversationStore()
    store.append_pair("a", "hi", "hello")
    assert store.get("b") == []
    assert store.models() == ["a"]
    store.clear("a")
    assert store.get("a") == []
    assert store.models() == []


def test_get_returns_a_copy():
    store = ConversationStore()
    store.append_pair("a", "hi", "hello")
    copy = store.get("a")
    copy.clear()
    assert len(store.get("a")) == 2


def test_replace_validates_and_truncates():
    store = ConversationStore(max_pairs=1)
    store.replace(
        "a",
        [
            {"role": "user", "content": "1"},
            {"role": "assistant", "content": "2"},
            Message(role="user", content="3"),
            {"role": "assistant", "content": "4"},
        ],
    )
    assert [m.content for m in store.get("a")] == ["3", "4"]
    with pytest.raises(ValueError):
        store.replace("a", [{"role": "robot", "content": "x"}])


def test_clear_all_and_snapshot():
    store = ConversationStore()
    store.append_pair("a", "1", "2")
    store.append_pair("b", "3", "4")
    assert set(store.snapshot()) == {"a", "b"}
    store.clear_all()
    assert store.snapshot() == {}


def test_max_pairs_must_be_positive():
    with pytest.raises(ValueError):
        ConversationStore(max_pairs=0)
