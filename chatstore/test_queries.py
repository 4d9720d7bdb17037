"""
Tests for the query engine.

Tests cover:
- Message listing: filters, ordering, pagination, paging normalization
- Context expansion in listings and the standalone context window
- Chat listing: search, sort modes, last-message equality join
- Contact search, contact chats, last interaction
- Not-found behaviour of single-entity lookups
"""

from datetime import datetime, timezone

import pytest

from chatstore.errors import NotFoundError
from chatstore.queries import QueryEngine
from chatstore.schemas import ChatRecord, MessageRecord


ALICE = "111@s.whatsapp.net"
BOB = "222@s.whatsapp.net"
GROUP = "999-123@g.us"


def ts(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def add_chat(store, jid, name=None, at=None):
    store.upsert_chat(ChatRecord(jid=jid, name=name, last_message_time=ts(at) if at is not None else None))


def add_message(store, msg_id, chat_jid, at, content="hello", sender="", is_from_me=False):
    store.upsert_message(MessageRecord(
        id=msg_id,
        chat_jid=chat_jid,
        sender=sender,
        content=content,
        timestamp=ts(at),
        is_from_me=is_from_me,
    ))


@pytest.fixture
def queries(store):
    return QueryEngine(store)


@pytest.fixture
def five_messages(store):
    """Chat with messages at t=10,20,30,40,50 (ids m10..m50)."""
    add_chat(store, ALICE, "Alice", at=50)
    for at in (10, 20, 30, 40, 50):
        add_message(store, f"m{at}", ALICE, at, content=f"message {at}", sender="111")
    return store


class TestListMessages:

    def test_newest_first(self, queries, five_messages):
        messages = queries.list_messages()

        assert [m.id for m in messages] == ["m50", "m40", "m30", "m20", "m10"]
        assert messages[0].chat_name == "Alice"

    def test_pagination(self, queries, five_messages):
        messages = queries.list_messages(limit=2, page=1)

        assert [m.id for m in messages] == ["m30", "m20"]

    def test_paging_normalization(self, queries, store):
        add_chat(store, ALICE, "Alice", at=30)
        for i in range(30):
            add_message(store, f"m{i}", ALICE, i + 1)

        # limit <= 0 falls back to 20, negative page to 0
        messages = queries.list_messages(limit=0, page=-3)

        assert len(messages) == 20
        assert messages[0].id == "m29"

    def test_time_range_is_inclusive(self, queries, five_messages):
        messages = queries.list_messages(after=ts(20), before=ts(40))

        assert [m.id for m in messages] == ["m40", "m30", "m20"]

    def test_fractional_lower_bound_excludes_earlier_second(self, queries, five_messages):
        after = datetime.fromtimestamp(10.5, tz=timezone.utc)

        messages = queries.list_messages(after=after, before=ts(30))

        assert [m.id for m in messages] == ["m30", "m20"]

    def test_filters_combine(self, queries, store):
        add_chat(store, ALICE, "Alice", at=3)
        add_chat(store, BOB, "Bob", at=3)
        add_message(store, "a1", ALICE, 1, content="Lunch tomorrow?", sender="111")
        add_message(store, "a2", ALICE, 2, content="lunch is at noon", sender="me", is_from_me=True)
        add_message(store, "b1", BOB, 3, content="LUNCH!", sender="222")

        assert [m.id for m in queries.list_messages(query="lunch")] == ["b1", "a2", "a1"]
        assert [m.id for m in queries.list_messages(query="lunch", chat_jid=ALICE)] == ["a2", "a1"]
        assert [m.id for m in queries.list_messages(query="lunch", sender="111")] == ["a1"]
        assert queries.list_messages(sender="11") == []

    def test_query_wildcards_are_literal(self, queries, store):
        add_chat(store, ALICE, "Alice", at=2)
        add_message(store, "a1", ALICE, 1, content="100% sure")
        add_message(store, "a2", ALICE, 2, content="1000 things")

        assert [m.id for m in queries.list_messages(query="0%")] == ["a1"]

    def test_include_context_flattens_windows(self, queries, five_messages):
        messages = queries.list_messages(
            query="message 30", include_context=True, context_before=1, context_after=1
        )

        assert [m.id for m in messages] == ["m20", "m30", "m40"]

    def test_include_context_keeps_overlaps(self, queries, five_messages):
        messages = queries.list_messages(
            after=ts(30), before=ts(40), include_context=True, context_before=1, context_after=1
        )

        # matches m40 then m30; each window is ascending, windows are not merged
        assert [m.id for m in messages] == ["m30", "m40", "m50", "m20", "m30", "m40"]

    def test_include_context_no_matches(self, queries, five_messages):
        assert queries.list_messages(query="nothing", include_context=True) == []

    def test_recent_messages_across_chats(self, queries, store):
        add_chat(store, ALICE, "Alice", at=3)
        add_chat(store, BOB, "Bob", at=2)
        add_message(store, "a1", ALICE, 1)
        add_message(store, "b1", BOB, 2)
        add_message(store, "a2", ALICE, 3)

        assert [m.id for m in queries.list_recent_messages(limit=2)] == ["a2", "b1"]


class TestMessageContext:

    def test_window(self, queries, five_messages):
        context = queries.get_message_context("m30", before=2, after=1)

        assert [m.id for m in context.before] == ["m10", "m20"]
        assert context.message.id == "m30"
        assert [m.id for m in context.after] == ["m40"]

    def test_window_picks_nearest_neighbours(self, queries, five_messages):
        context = queries.get_message_context("m40", before=2, after=5)

        assert [m.id for m in context.before] == ["m20", "m30"]
        assert [m.id for m in context.after] == ["m50"]

    def test_earliest_message_has_empty_before(self, queries, five_messages):
        context = queries.get_message_context("m10", before=5, after=0)

        assert context.before == []
        assert context.after == []

    def test_window_stays_in_chat(self, queries, five_messages, store):
        add_chat(store, BOB, "Bob", at=35)
        add_message(store, "b35", BOB, 35)

        context = queries.get_message_context("m30", before=5, after=5)

        assert "b35" not in [m.id for m in context.before + context.after]

    def test_unknown_message(self, queries, five_messages):
        with pytest.raises(NotFoundError):
            queries.get_message_context("unknown-id")


class TestListChats:

    def test_default_order_last_active(self, queries, store):
        add_chat(store, ALICE, "Alice", at=10)
        add_chat(store, BOB, "Bob", at=30)
        add_chat(store, GROUP, "Family", at=None)

        assert [c.jid for c in queries.list_chats()] == [BOB, ALICE, GROUP]

    def test_sort_by_name(self, queries, store):
        add_chat(store, ALICE, "Zed", at=30)
        add_chat(store, BOB, "Anna", at=10)
        add_chat(store, GROUP, "Mia", at=20)

        names = [c.name for c in queries.list_chats(sort_by="name")]
        assert names == ["Anna", "Mia", "Zed"]

    def test_search_name_or_jid_case_insensitive(self, queries, store):
        add_chat(store, ALICE, "Alice Smith", at=1)
        add_chat(store, BOB, "Bob", at=2)

        assert [c.jid for c in queries.list_chats(query="SMITH")] == [ALICE]
        assert [c.jid for c in queries.list_chats(query="222@")] == [BOB]

    def test_pagination(self, queries, store):
        for i in range(5):
            add_chat(store, f"{i}@s.whatsapp.net", f"chat {i}", at=i + 1)

        chats = queries.list_chats(limit=2, page=1)
        assert [c.jid for c in chats] == ["2@s.whatsapp.net", "1@s.whatsapp.net"]

    def test_last_message_matches_watermark(self, queries, five_messages):
        [chat] = queries.list_chats()

        assert chat.last_message == "message 50"
        assert chat.last_sender == "111"
        assert chat.last_is_from_me is False
        assert chat.is_group is False

    def test_last_message_absent_when_watermark_matches_nothing(self, queries, store):
        add_chat(store, ALICE, "Alice", at=99)
        add_message(store, "a1", ALICE, 1, content="older")

        [chat] = queries.list_chats()

        assert chat.last_message_time == ts(99)
        assert chat.last_message is None

    def test_watermark_tie_yields_one_row(self, queries, store):
        add_chat(store, ALICE, "Alice", at=5)
        add_message(store, "b", ALICE, 5, content="second id")
        add_message(store, "a", ALICE, 5, content="first id")

        chats = queries.list_chats()

        assert len(chats) == 1
        assert chats[0].last_message == "first id"

    def test_without_last_message(self, queries, five_messages):
        [chat] = queries.list_chats(include_last_message=False)

        assert chat.jid == ALICE
        assert chat.last_message is None

    def test_group_flag(self, queries, store):
        add_chat(store, GROUP, "Family", at=1)

        assert queries.list_chats()[0].is_group is True


class TestGetChat:

    def test_found_with_last_message(self, queries, five_messages):
        chat = queries.get_chat(ALICE)

        assert chat.name == "Alice"
        assert chat.last_message == "message 50"

    def test_unknown_raises(self, queries, store):
        with pytest.raises(NotFoundError):
            queries.get_chat("unknown@x")
        # the store itself reports absence without an error
        assert store.get_chat("unknown@x") is None

    def test_direct_chat_by_phone(self, queries, store):
        add_chat(store, ALICE, "Alice", at=1)

        assert queries.get_direct_chat_by_contact("111").jid == ALICE
        assert queries.get_direct_chat_by_contact("+111").jid == ALICE
        assert queries.get_direct_chat_by_contact(ALICE).jid == ALICE


class TestContacts:

    def test_search_excludes_groups(self, queries, store):
        add_chat(store, ALICE, "Team Alice", at=1)
        add_chat(store, GROUP, "Team chat", at=2)

        contacts = queries.search_contacts("team")

        assert [c.jid for c in contacts] == [ALICE]
        assert contacts[0].phone_number == "111"
        assert contacts[0].name == "Team Alice"

    def test_search_by_phone_ordered_by_name(self, queries, store):
        add_chat(store, "4915@s.whatsapp.net", "Zoe", at=1)
        add_chat(store, "4916@s.whatsapp.net", "Adam", at=2)

        contacts = queries.search_contacts("491")

        assert [c.name for c in contacts] == ["Adam", "Zoe"]

    def test_search_capped_at_50(self, queries, store):
        for i in range(60):
            add_chat(store, f"{1000 + i}@s.whatsapp.net", f"Contact {i:02d}", at=i + 1)

        assert len(queries.search_contacts("contact")) == 50

    def test_contact_chats(self, queries, store):
        add_chat(store, ALICE, "Alice", at=10)
        add_chat(store, GROUP, "Family", at=20)
        add_chat(store, BOB, "Bob", at=30)
        add_message(store, "a1", ALICE, 10, sender="111")
        add_message(store, "g1", GROUP, 20, content="hi all", sender="111@s.whatsapp.net")
        add_message(store, "b1", BOB, 30, sender="222")

        chats = queries.get_contact_chats(ALICE)

        assert [c.jid for c in chats] == [GROUP, ALICE]
        assert chats[0].last_message == "hi all"

    def test_contact_chats_dedupes(self, queries, store):
        add_chat(store, GROUP, "Family", at=3)
        for i in range(3):
            add_message(store, f"g{i}", GROUP, i + 1, sender="111@s.whatsapp.net")

        assert [c.jid for c in queries.get_contact_chats(ALICE)] == [GROUP]

    def test_last_interaction(self, queries, store):
        add_chat(store, ALICE, "Alice", at=10)
        add_chat(store, GROUP, "Family", at=20)
        add_message(store, "a1", ALICE, 10, content="direct", sender="111")
        add_message(store, "g1", GROUP, 20, content="in group", sender="111@s.whatsapp.net")

        msg = queries.get_last_interaction(ALICE)

        assert msg.id == "g1"
        assert msg.chat_name == "Family"

    def test_last_interaction_in_own_chat(self, queries, store):
        add_chat(store, ALICE, "Alice", at=10)
        add_message(store, "a1", ALICE, 10, content="sent by me", sender="me", is_from_me=True)

        assert queries.get_last_interaction(ALICE).id == "a1"

    def test_last_interaction_unknown(self, queries, five_messages):
        with pytest.raises(NotFoundError):
            queries.get_last_interaction(BOB)

    def test_empty_local_part_matches_no_sender(self, queries, five_messages, store):
        add_chat(store, GROUP, "Family", at=60)
        add_message(store, "g1", GROUP, 60, sender="222@s.whatsapp.net")

        assert queries.get_contact_chats("@s.whatsapp.net") == []
        with pytest.raises(NotFoundError):
            queries.get_last_interaction("@s.whatsapp.net")
