"""
Tests for the conversation service: persisted writes followed by room broadcasts.
"""
import pytest

from core.exceptions import AuthorizationError, NotFoundError, ValidationError
from db.models import MessageRead, PresenceStatus
from services.conversation_service import ConversationService
from services.presence import PresenceStore


class FailingBroadcaster:
    """Broadcaster whose every emit blows up."""

    def __init__(self):
        self.calls = 0

    async def emit(self, room, event, payload, exclude=None):
        self.calls += 1
        raise RuntimeError("broadcast backend unavailable")


@pytest.fixture
def service(test_db, gateway):
    return ConversationService(test_db, gateway.broadcaster, gateway.presence_notifier)


@pytest.fixture
def room(gateway, connect, seed, tokens):
    """Alice and Bob connected and subscribed to conv1; returns their sockets."""
    async def _room():
        alice, alice_ws = await connect(tokens.alice)
        bob, bob_ws = await connect(tokens.bob)
        for connection in (alice, bob):
            await gateway.dispatch(connection, {"event": "join-conversation", "data": seed.conv1})
        alice_ws.clear()
        bob_ws.clear()
        return alice_ws, bob_ws

    return _room


class TestSendMessage:

    @pytest.mark.asyncio
    async def test_message_is_persisted_and_broadcast_to_everyone(self, service, room, seed, identities):
        alice_ws, bob_ws = await room()

        message = await service.send_message(identities.alice, seed.conv1, "  hello team  ")

        assert message["messageText"] == "hello team"
        assert message["senderId"] == seed.alice
        assert message["sender"]["displayName"] == "Alice"
        assert bob_ws.events("new-message") == [{"event": "new-message", "data": {"message": message}}]
        # the sender's own connection receives the message as well
        assert len(alice_ws.events("new-message")) == 1

        history = await service.get_messages(identities.bob, seed.conv1)
        assert [m["id"] for m in history] == [message["id"]]

    @pytest.mark.asyncio
    async def test_non_participant_cannot_send(self, service, room, seed, identities):
        alice_ws, bob_ws = await room()

        with pytest.raises(AuthorizationError):
            await service.send_message(identities.carol, seed.conv1, "let me in")

        assert bob_ws.sent == []
        assert await service.get_messages(identities.alice, seed.conv1) == []

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, service, seed, identities):
        with pytest.raises(NotFoundError):
            await service.send_message(identities.alice, "missing", "hello")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", [None, "", "   "])
    async def test_blank_text_is_rejected(self, service, seed, identities, text):
        with pytest.raises(ValidationError):
            await service.send_message(identities.alice, seed.conv1, text)

    @pytest.mark.asyncio
    async def test_invalid_message_type_is_rejected(self, service, seed, identities):
        with pytest.raises(ValidationError):
            await service.send_message(identities.alice, seed.conv1, "hi", message_type="video")

    @pytest.mark.asyncio
    async def test_reply_joins_the_parent_thread(self, service, seed, identities):
        parent = await service.send_message(identities.alice, seed.conv1, "question?")
        reply = await service.send_message(identities.bob, seed.conv1, "answer", parent_id=parent["id"])

        assert reply["parentId"] == parent["id"]
        assert reply["threadId"] == parent["id"]

    @pytest.mark.asyncio
    async def test_parent_from_another_conversation_is_rejected(self, service, seed, identities):
        parent = await service.send_message(identities.alice, seed.conv2, "elsewhere")
        with pytest.raises(NotFoundError):
            await service.send_message(identities.alice, seed.conv1, "reply", parent_id=parent["id"])

    @pytest.mark.asyncio
    async def test_broadcast_failure_does_not_undo_the_write(self, test_db, seed, identities):
        broadcaster = FailingBroadcaster()
        service = ConversationService(test_db, broadcaster)

        message = await service.send_message(identities.alice, seed.conv1, "still saved")

        assert broadcaster.calls == 1
        history = await service.get_messages(identities.alice, seed.conv1)
        assert [m["id"] for m in history] == [message["id"]]


class TestActivityPresence:

    @pytest.mark.asyncio
    async def test_sending_while_online_refreshes_last_active_for_the_tenant(
        self, service, room, connect, seed, tokens, identities
    ):
        alice_ws, bob_ws = await room()
        _, carol_ws = await connect(tokens.carol)
        bob_ws.clear()
        carol_ws.clear()

        await service.send_message(identities.alice, seed.conv1, "hi")
        await service.send_message(identities.alice, seed.conv1, "still here")

        activity = carol_ws.events("user-activity")
        assert [f["data"]["userId"] for f in activity] == [seed.alice, seed.alice]
        assert all(f["data"]["status"] == "online" for f in activity)
        assert activity[0]["data"]["lastActiveAt"] <= activity[1]["data"]["lastActiveAt"]
        assert len(bob_ws.events("user-activity")) == 2
        assert bob_ws.events("user-status-changed") == []

    @pytest.mark.asyncio
    async def test_sending_while_away_brings_user_back_online(
        self, service, connect, session_factory, seed, tokens, identities
    ):
        _, bob_ws = await connect(tokens.bob)
        db = session_factory()
        try:
            PresenceStore(db).transition(seed.alice, PresenceStatus.AWAY)
        finally:
            db.close()
        bob_ws.clear()

        await service.send_message(identities.alice, seed.conv1, "back")

        activity = bob_ws.events("user-activity")
        assert len(activity) == 1
        assert activity[0]["data"]["userId"] == seed.alice
        assert activity[0]["data"]["status"] == "online"


class TestEditAndDelete:

    @pytest.mark.asyncio
    async def test_edit_own_message(self, service, room, seed, identities):
        message = await service.send_message(identities.alice, seed.conv1, "tpyo")
        alice_ws, bob_ws = await room()

        edited = await service.edit_message(identities.alice, message["id"], "typo")

        assert edited["messageText"] == "typo"
        assert edited["edited"] is True
        updates = bob_ws.events("message-updated")
        assert len(updates) == 1
        assert updates[0]["data"]["message"]["id"] == message["id"]
        assert updates[0]["data"]["message"]["messageText"] == "typo"
        assert updates[0]["data"]["message"]["editedAt"] is not None

    @pytest.mark.asyncio
    async def test_cannot_edit_someone_elses_message(self, service, seed, identities):
        message = await service.send_message(identities.alice, seed.conv1, "mine")
        with pytest.raises(AuthorizationError):
            await service.edit_message(identities.bob, message["id"], "hijacked")

    @pytest.mark.asyncio
    async def test_delete_hides_message_and_broadcasts(self, service, room, seed, identities):
        message = await service.send_message(identities.alice, seed.conv1, "oops")
        alice_ws, bob_ws = await room()

        result = await service.delete_message(identities.alice, message["id"])

        assert result == {"messageId": message["id"]}
        assert bob_ws.events("message-deleted") == [
            {"event": "message-deleted", "data": {"messageId": message["id"]}}
        ]
        assert await service.get_messages(identities.bob, seed.conv1) == []
        with pytest.raises(NotFoundError):
            await service.delete_message(identities.alice, message["id"])

    @pytest.mark.asyncio
    async def test_cannot_delete_someone_elses_message(self, service, seed, identities):
        message = await service.send_message(identities.alice, seed.conv1, "mine")
        with pytest.raises(AuthorizationError):
            await service.delete_message(identities.bob, message["id"])


class TestReactions:

    @pytest.mark.asyncio
    async def test_reaction_toggles(self, service, room, seed, identities):
        message = await service.send_message(identities.alice, seed.conv1, "ship it")
        alice_ws, bob_ws = await room()

        added = await service.toggle_reaction(identities.bob, message["id"], "👍")
        removed = await service.toggle_reaction(identities.bob, message["id"], "👍")

        assert added["action"] == "added"
        assert added["reaction"]["emoji"] == "👍"
        assert removed == {"action": "removed", "messageId": message["id"], "emoji": "👍"}
        assert [f["event"] for f in alice_ws.sent] == ["reaction-added", "reaction-removed"]
        assert alice_ws.sent[1]["data"] == {"messageId": message["id"], "userId": seed.bob, "emoji": "👍"}

    @pytest.mark.asyncio
    async def test_invalid_emoji(self, service, seed, identities):
        message = await service.send_message(identities.alice, seed.conv1, "hi")
        with pytest.raises(ValidationError):
            await service.toggle_reaction(identities.bob, message["id"], "x" * 11)

    @pytest.mark.asyncio
    async def test_outsider_cannot_react(self, service, seed, identities):
        message = await service.send_message(identities.alice, seed.conv1, "hi")
        with pytest.raises(AuthorizationError):
            await service.toggle_reaction(identities.carol, message["id"], "👍")


class TestReadReceiptsAndTyping:

    @pytest.mark.asyncio
    async def test_mark_read_records_and_broadcasts(self, service, test_db, room, seed, identities):
        first = await service.send_message(identities.alice, seed.conv1, "one")
        second = await service.send_message(identities.alice, seed.conv1, "two")
        elsewhere = await service.send_message(identities.alice, seed.conv2, "three")
        alice_ws, bob_ws = await room()

        result = await service.mark_messages_read(
            identities.bob, seed.conv1, [first["id"], second["id"], elsewhere["id"]]
        )

        assert sorted(result["messageIds"]) == sorted([first["id"], second["id"]])
        assert result["recorded"] == 2
        assert test_db.query(MessageRead).filter_by(user_id=seed.bob).count() == 2
        receipts = alice_ws.events("messages-read")
        assert len(receipts) == 1
        assert receipts[0]["data"]["userId"] == seed.bob
        assert len(bob_ws.events("messages-read")) == 1

        again = await service.mark_messages_read(identities.bob, seed.conv1, [first["id"]])
        assert again["recorded"] == 0

    @pytest.mark.asyncio
    async def test_mark_read_requires_ids(self, service, seed, identities):
        with pytest.raises(ValidationError):
            await service.mark_messages_read(identities.bob, seed.conv1, [])

    @pytest.mark.asyncio
    async def test_mark_read_of_unknown_ids_broadcasts_nothing(self, service, room, seed, identities):
        alice_ws, bob_ws = await room()
        result = await service.mark_messages_read(identities.bob, seed.conv1, ["nope"])
        assert result["messageIds"] == []
        assert alice_ws.sent == []

    @pytest.mark.asyncio
    async def test_typing_indicator(self, service, room, seed, identities):
        alice_ws, bob_ws = await room()

        await service.set_typing(identities.alice, seed.conv1, True)

        assert bob_ws.events("typing-indicator") == [{"event": "typing-indicator", "data": {
            "conversationId": seed.conv1,
            "userId": seed.alice,
            "displayName": "Alice",
            "isTyping": True,
        }}]

    @pytest.mark.asyncio
    async def test_typing_requires_membership(self, service, seed, identities):
        with pytest.raises(AuthorizationError):
            await service.set_typing(identities.carol, seed.conv1, True)


class TestCreateConversation:

    @pytest.mark.asyncio
    async def test_direct_conversation(self, service, connect, seed, tokens, identities):
        _, carol_ws = await connect(tokens.carol)
        carol_ws.clear()

        conversation = await service.create_conversation(identities.bob, None, [seed.carol])

        assert conversation["isGroup"] is False
        assert {p["id"] for p in conversation["participants"]} == {seed.bob, seed.carol}
        assert carol_ws.events("conversation-created") == [
            {"event": "conversation-created", "data": {"conversation": conversation}}
        ]

    @pytest.mark.asyncio
    async def test_several_participants_make_a_group(self, service, seed, identities):
        conversation = await service.create_conversation(identities.alice, "Team", [seed.bob, seed.carol])
        assert conversation["isGroup"] is True
        assert conversation["name"] == "Team"

    @pytest.mark.asyncio
    async def test_creator_alone_is_rejected(self, service, seed, identities):
        with pytest.raises(ValidationError):
            await service.create_conversation(identities.alice, None, [seed.alice])

    @pytest.mark.asyncio
    async def test_unknown_participant_is_rejected(self, service, seed, identities):
        with pytest.raises(ValidationError):
            await service.create_conversation(identities.alice, None, ["missing"])

    @pytest.mark.asyncio
    async def test_other_tenant_needs_cross_tenant_flag(self, service, seed, identities):
        with pytest.raises(ValidationError):
            await service.create_conversation(identities.alice, None, [seed.dave])

    @pytest.mark.asyncio
    async def test_cross_tenant_conversation_reaches_both_tenants(self, service, connect, seed, tokens, identities):
        _, dave_ws = await connect(tokens.dave)
        dave_ws.clear()

        conversation = await service.create_conversation(
            identities.alice, "Partners", [seed.dave], cross_tenant=True
        )

        assert conversation["crossTenant"] is True
        assert len(dave_ws.events("conversation-created")) == 1

    @pytest.mark.asyncio
    async def test_list_conversations_pages(self, service, seed, identities):
        first_page = await service.list_conversations(identities.alice, page=1, limit=3)
        second_page = await service.list_conversations(identities.alice, page=2, limit=3)

        assert len(first_page) == 3
        assert len(second_page) == 1
        ids = {c["id"] for c in first_page + second_page}
        assert ids == {seed.conv1, seed.conv2, seed.conv3, seed.conv_carol}
