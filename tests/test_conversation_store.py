"""
Tests for the conversation stores.

Behavioural tests run against both backends through the parametrised 'store'
fixture; backend-specific checks live in their own classes.
"""

import pytest
from sqlalchemy import select

from cardsense_chat.conversation_database.data_models.conversation import (
    DEFAULT_CONVERSATION_TITLE,
    ConversationStatus,
)
from cardsense_chat.conversation_database.data_models.message import Sender
from cardsense_chat.conversation_database.sql_store import MessageRow
from cardsense_chat.conversation_database.store import make_title
from cardsense_chat.errors import ConversationNotFoundError, PersistenceError

USER = "user-42"


async def add_exchange(store, conversation_id, question, answer="Noted.", user_id=USER):
    await store.append_message(conversation_id, user_id, Sender.USER, question)
    return await store.append_message(
        conversation_id, user_id, Sender.ASSISTANT, answer, model_used="cardsense-rag", response_time_ms=120
    )


class TestMakeTitle:
    def test_short_message_is_used_stripped(self):
        assert make_title("  Best cashback card?  ") == "Best cashback card?"

    def test_exactly_fifty_characters_is_kept(self):
        text = "x" * 50
        assert make_title(text) == text

    def test_long_message_is_truncated_with_ellipsis(self):
        text = "Which credit card gives the best rewards on international travel bookings?"
        assert make_title(text) == text[:50] + "..."
        assert len(make_title(text)) == 53

    def test_no_message_gives_default_title(self):
        assert make_title(None) == DEFAULT_CONVERSATION_TITLE
        assert make_title("   ") == DEFAULT_CONVERSATION_TITLE


class TestActiveConversation:
    @pytest.mark.asyncio
    async def test_get_or_create_is_idempotent(self, store):
        first = await store.get_or_create_active_conversation(USER)
        second = await store.get_or_create_active_conversation(USER)
        assert first == second
        conversation = await store.get_conversation(first)
        assert conversation.title == DEFAULT_CONVERSATION_TITLE
        assert conversation.status is ConversationStatus.ACTIVE
        assert conversation.total_messages == 0

    @pytest.mark.asyncio
    async def test_users_get_separate_conversations(self, store):
        assert await store.get_or_create_active_conversation("a") != await store.get_or_create_active_conversation("b")

    @pytest.mark.asyncio
    async def test_archived_conversation_is_no_longer_active(self, store):
        conversation_id = await store.get_or_create_active_conversation(USER)
        await store.archive_conversation(conversation_id)
        assert await store.get_active_conversation(USER) is None
        assert await store.get_or_create_active_conversation(USER) != conversation_id

    @pytest.mark.asyncio
    async def test_start_new_conversation_reuses_empty_one(self, store):
        conversation_id = await store.get_or_create_active_conversation(USER)
        assert await store.start_new_conversation(USER) == conversation_id

    @pytest.mark.asyncio
    async def test_start_new_conversation_archives_current(self, store):
        old_id = await store.get_or_create_active_conversation(USER)
        await add_exchange(store, old_id, "hello")
        new_id = await store.start_new_conversation(USER)
        assert new_id != old_id
        assert (await store.get_conversation(old_id)).status is ConversationStatus.ARCHIVED
        assert (await store.get_active_conversation(USER)).id == new_id

    @pytest.mark.asyncio
    async def test_create_conversation_keeps_one_active(self, store):
        first = await store.create_conversation(USER)
        second = await store.create_conversation(USER, title="Travel cards")
        assert second.title == "Travel cards"
        assert (await store.get_conversation(first.id)).status is ConversationStatus.ARCHIVED
        assert (await store.get_active_conversation(USER)).id == second.id


class TestMessages:
    @pytest.mark.asyncio
    async def test_round_trip_preserves_order(self, store):
        conversation_id = await store.get_or_create_active_conversation(USER)
        texts = [f"message {i}" for i in range(6)]
        for i, text in enumerate(texts):
            sender = Sender.USER if i % 2 == 0 else Sender.ASSISTANT
            await store.append_message(conversation_id, USER, sender, text)

        history = await store.load_history(conversation_id, 50)

        assert [message.text for message in history] == texts
        assert [message.sequence for message in history] == [1, 2, 3, 4, 5, 6]
        assert all(a.created_at <= b.created_at for a, b in zip(history, history[1:]))
        assert history[0].sender is Sender.USER
        assert history[1].sender is Sender.ASSISTANT

    @pytest.mark.asyncio
    async def test_load_history_returns_most_recent_oldest_first(self, store):
        conversation_id = await store.get_or_create_active_conversation(USER)
        for i in range(5):
            await store.append_message(conversation_id, USER, Sender.USER, f"m{i}")
        history = await store.load_history(conversation_id, 2)
        assert [message.text for message in history] == ["m3", "m4"]

    @pytest.mark.asyncio
    async def test_empty_history(self, store):
        conversation_id = await store.get_or_create_active_conversation(USER)
        assert await store.load_history(conversation_id, 20) == []
        assert await store.load_history(conversation_id, 0) == []

    @pytest.mark.asyncio
    async def test_append_updates_conversation_in_same_step(self, store):
        conversation_id = await store.get_or_create_active_conversation(USER)
        assistant = await add_exchange(store, conversation_id, "hi", "hello")
        conversation = await store.get_conversation(conversation_id)
        assert conversation.total_messages == 2
        assert conversation.last_message_at == assistant.created_at
        assert assistant.model_used == "cardsense-rag"
        assert assistant.response_time_ms == 120

    @pytest.mark.asyncio
    async def test_append_to_missing_conversation_raises(self, store):
        with pytest.raises(PersistenceError):
            await store.append_message("does-not-exist", USER, Sender.USER, "hello")

    @pytest.mark.asyncio
    async def test_first_user_message(self, store):
        conversation_id = await store.get_or_create_active_conversation(USER)
        assert await store.get_first_user_message(conversation_id) is None
        await store.append_message(conversation_id, USER, Sender.ASSISTANT, "Welcome!")
        await add_exchange(store, conversation_id, "first question")
        await store.append_message(conversation_id, USER, Sender.USER, "second question")
        assert (await store.get_first_user_message(conversation_id)).text == "first question"


class TestTitles:
    @pytest.mark.asyncio
    async def test_generate_title_from_first_user_message(self, store):
        conversation_id = await store.get_or_create_active_conversation(USER)
        question = "Can you compare the SBI Cashback card with the HDFC Millennia card for me?"
        await add_exchange(store, conversation_id, question)
        title = await store.generate_title(conversation_id)
        assert title == question[:50] + "..."
        await store.update_title(conversation_id, title)
        assert (await store.get_conversation(conversation_id)).title == title

    @pytest.mark.asyncio
    async def test_generate_title_without_messages(self, store):
        conversation_id = await store.get_or_create_active_conversation(USER)
        assert await store.generate_title(conversation_id) == DEFAULT_CONVERSATION_TITLE


class TestListingAndDeletion:
    @pytest.mark.asyncio
    async def test_list_is_most_recent_first(self, store, ticking_clock):
        first = await store.get_or_create_active_conversation(USER)
        await add_exchange(store, first, "first")
        second = await store.start_new_conversation(USER)
        await add_exchange(store, second, "second")
        await add_exchange(store, first, "first again")

        conversations = await store.list_conversations(USER)

        assert [conversation.id for conversation in conversations] == [first, second]

    @pytest.mark.asyncio
    async def test_list_respects_limit_and_owner(self, store):
        for _ in range(3):
            await store.create_conversation(USER)
        await store.create_conversation("someone-else")
        assert len(await store.list_conversations(USER, limit=2)) == 2
        assert len(await store.list_conversations(USER)) == 3

    @pytest.mark.asyncio
    async def test_delete_removes_conversation_and_messages(self, store):
        conversation_id = await store.get_or_create_active_conversation(USER)
        await add_exchange(store, conversation_id, "hello")

        await store.delete_conversation(conversation_id)

        assert await store.list_conversations(USER) == []
        with pytest.raises(ConversationNotFoundError):
            await store.get_conversation(conversation_id)
        with pytest.raises(ConversationNotFoundError):
            await store.load_history(conversation_id, 10)

    @pytest.mark.asyncio
    async def test_delete_missing_conversation_raises(self, store):
        with pytest.raises(ConversationNotFoundError):
            await store.delete_conversation("does-not-exist")

    @pytest.mark.asyncio
    async def test_clear_conversations(self, store):
        for question in ("a", "b"):
            conversation_id = await store.start_new_conversation(USER)
            await add_exchange(store, conversation_id, question)
        other = await store.get_or_create_active_conversation("someone-else")

        assert await store.clear_conversations(USER) == 2
        assert await store.list_conversations(USER) == []
        assert (await store.get_conversation(other)).user_id == "someone-else"


class TestSQLAlchemyStore:
    @pytest.mark.asyncio
    async def test_delete_leaves_no_orphan_messages(self, sql_store):
        conversation_id = await sql_store.get_or_create_active_conversation(USER)
        await add_exchange(sql_store, conversation_id, "hello")
        await sql_store.delete_conversation(conversation_id)

        async with sql_store._sessions() as session:
            remaining = (await session.scalars(select(MessageRow))).all()
        assert remaining == []

    @pytest.mark.asyncio
    async def test_survives_new_store_instance(self, tmp_path):
        from cardsense_chat.conversation_database.sql_store import SQLAlchemyConversationStore

        url = f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}"
        store = SQLAlchemyConversationStore.from_url(url)
        await store.create_schema()
        conversation_id = await store.get_or_create_active_conversation(USER)
        await add_exchange(store, conversation_id, "remember me")
        await store.close()

        reopened = SQLAlchemyConversationStore.from_url(url)
        try:
            assert await reopened.get_or_create_active_conversation(USER) == conversation_id
            history = await reopened.load_history(conversation_id, 10)
            assert [message.text for message in history] == ["remember me", "Noted."]
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_driver_errors_become_persistence_errors(self):
        from cardsense_chat.conversation_database.sql_store import SQLAlchemyConversationStore

        store = SQLAlchemyConversationStore.from_url("sqlite+aiosqlite:///:memory:")
        try:
            # Schema never created.
            with pytest.raises(PersistenceError):
                await store.get_or_create_active_conversation(USER)
        finally:
            await store.close()
