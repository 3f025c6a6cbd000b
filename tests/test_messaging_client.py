"""
End-to-end tests for the messaging client facade over in-memory collaborators
"""

import pytest

from infrastructure.config.settings import get_config
from messaging_client import MessagingClient
from services.chat_service.models import DeliveryState

SESSION_PAYLOAD = {
    "access_token": "access-token",
    "refresh_token": "refresh-token",
    "expires_in": 3600,
    "user": {"id": "user-alice", "email": "alice@example.com"},
}


@pytest.fixture
def client(backend, realtime, notifier):
    backend.add_row("users", {"id": "user-alice", "name": "Alice", "username": "alice", "email": "alice@example.com"})
    backend.add_row("users", {"id": "user-bob", "name": "Bob", "username": "bob", "email": "bob@example.com"})
    backend.add_row("users", {"id": "user-carol", "name": "Carol", "username": "carol", "email": "carol@example.com"})
    backend.add_row("chats", {"id": "chat-bob", "participants": ["user-alice", "user-bob"], "is_group": False,
                              "last_message": "hey", "updated_at": "2023-12-30T10:00:00Z"})
    backend.add_row("chats", {"id": "chat-carol", "participants": ["user-alice", "user-carol"], "is_group": False,
                              "last_message": "yo", "updated_at": "2023-12-31T10:00:00Z"})
    backend.auth_payload = SESSION_PAYLOAD
    return MessagingClient(config=get_config(), backend=backend, realtime=realtime, notifier=notifier)


class TestMessagingClient:
    """Test wiring between the services"""

    @pytest.mark.asyncio
    async def test_start_requires_sign_in(self, client, realtime):
        await client.start()

        assert client.started is False
        assert realtime.active_topics == []

    @pytest.mark.asyncio
    async def test_signed_in_services(self, client, backend, realtime):
        await client.auth.sign_in("alice@example.com", "secret")
        await client.start()

        assert [c.id for c in client.chats.chats] == ["chat-carol", "chat-bob"]
        assert "realtime:user_chats:user-alice" in realtime.active_topics
        assert "realtime:user-presence" in realtime.active_topics
        assert ("update_user_presence", {"status_param": "online"}) in backend.rpc_calls

        await client.close()

        assert backend.rpc_calls[-1] == ("update_user_presence", {"status_param": "offline"})
        assert client.started is False

    @pytest.mark.asyncio
    async def test_open_chat_send_and_release(self, client, backend, realtime):
        await client.auth.sign_in("alice@example.com", "secret")
        await client.start()

        async with client.open_chat("chat-bob") as chat:
            assert "realtime:messages:chat-bob" in realtime.active_topics
            assert "realtime:typing:chat-bob" in realtime.active_topics
            assert ("mark_messages_as_read", {"chat_id_param": "chat-bob"}) in backend.rpc_calls

            provisional = chat.messages.submit("hello bob")
            assert provisional.sender.name == "Alice"
            # The list is bumped before the send completes
            assert client.chats.chats[0].id == "chat-bob"
            assert client.chats.chats[0].last_message == "hello bob"
            await chat.messages.wait_idle()

            [message] = chat.messages.messages
            assert message.state == DeliveryState.CONFIRMED
            assert message.content == "hello bob"

        assert "realtime:messages:chat-bob" not in realtime.active_topics
        assert "realtime:typing:chat-bob" not in realtime.active_topics
        assert "realtime:user_chats:user-alice" in realtime.active_topics

        # Local send moved the conversation to the top of the list
        assert client.chats.chats[0].id == "chat-bob"
        assert client.chats.chats[0].last_message == "hello bob"

        await client.close()

    @pytest.mark.asyncio
    async def test_subscriptions_released_when_body_raises(self, client, realtime):
        await client.auth.sign_in("alice@example.com", "secret")

        with pytest.raises(RuntimeError):
            async with client.open_chat("chat-bob"):
                raise RuntimeError("view crashed")

        assert "realtime:messages:chat-bob" not in realtime.active_topics
        assert "realtime:typing:chat-bob" not in realtime.active_topics

    @pytest.mark.asyncio
    async def test_reactions_for_signed_in_user(self, client, backend):
        await client.auth.sign_in("alice@example.com", "secret")
        reactions = client.reactions("message-1")

        assert reactions.message_id == "message-1"
        assert reactions.user_provider().id == "user-alice"
