"""Unit tests for ChatCoordinator using in-memory stores and fake sockets."""
from unittest.mock import MagicMock

import pytest

from grouple_chat.chat.authorization import AuthorizationResolver
from grouple_chat.chat.manager import ChatCoordinator
from grouple_chat.chat.schemas import ConnectClaims, SendMessageEvent
from grouple_chat.errors import ClaimsValidationError, StoreError


class FakeWebSocket:
    """Records frames sent to it; fails every send once closed."""

    def __init__(self, name: str):
        self.name = name
        self.sent = []
        self.closed = False

    async def send_json(self, data):
        if self.closed:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def types(self):
        return [frame["type"] for frame in self.sent]


def customer_claims(booking_id="42", user_id="11", username="Cara"):
    return ConnectClaims(bookingId=booking_id, userId=user_id, username=username, role="user")


def admin_claims(booking_id="42", user_id="7", username="Chef"):
    return ConnectClaims(
        bookingId=booking_id, userId=user_id, username=username,
        role="admin", restaurantUserId=user_id,
    )


def send_event(text, booking_id="42"):
    return SendMessageEvent(bookingId=booking_id, message=text)


@pytest.fixture
def coordinator(booking_store, message_store):
    return ChatCoordinator(AuthorizationResolver(booking_store), message_store)


class TestJoin:
    """Tests for the connect/authorize/join path."""

    @pytest.mark.asyncio
    async def test_join_registers_session_and_sends_history(self, coordinator):
        ws = FakeWebSocket("customer")
        session = await coordinator.join(ws, customer_claims())

        assert session is not None
        assert session.user_id == "11"
        assert coordinator.get_room_size("42") == 1
        assert ws.sent == [{"type": "history", "data": []}]

    @pytest.mark.asyncio
    async def test_rejected_join_registers_nothing(self, coordinator):
        ws = FakeWebSocket("intruder")
        session = await coordinator.join(ws, customer_claims(user_id="12"))

        assert session is None
        assert coordinator.get_room_size("42") == 0
        assert ws.types() == ["error", "accessDenied"]

    @pytest.mark.asyncio
    async def test_user_joined_goes_to_others_only(self, coordinator):
        customer = FakeWebSocket("customer")
        admin = FakeWebSocket("admin")
        await coordinator.join(customer, customer_claims())
        await coordinator.join(admin, admin_claims())

        assert customer.types() == ["history", "userJoined"]
        assert customer.sent[1]["data"]["username"] == "Chef"
        assert admin.types() == ["history"]

    @pytest.mark.asyncio
    async def test_join_of_vanished_client_is_discarded(self, coordinator):
        ws = FakeWebSocket("gone")
        ws.closed = True

        assert await coordinator.join(ws, customer_claims()) is None
        assert coordinator.get_room_size("42") == 0

    @pytest.mark.asyncio
    async def test_first_joiner_hydrates_from_store(self, coordinator, message_store):
        first = await _seed_message(coordinator, "persisted earlier")
        coordinator.history.clear()

        ws = FakeWebSocket("customer")
        await coordinator.join(ws, customer_claims())

        assert ws.sent[0]["data"] == [first.model_dump(mode="json")]
        assert coordinator.get_message_count("42") == 1

    @pytest.mark.asyncio
    async def test_history_load_failure_sends_empty_history(self, booking_store):
        store = MagicMock()
        store.list_messages_for_booking.side_effect = StoreError("down", "list_messages_for_booking")
        coordinator = ChatCoordinator(AuthorizationResolver(booking_store), store)

        ws = FakeWebSocket("customer")
        assert await coordinator.join(ws, customer_claims()) is not None
        assert ws.sent[0] == {"type": "history", "data": []}
        # Not cached, so the next access retries the load
        assert "42" not in coordinator.history


class TestSendMessage:
    """Tests for persist-then-broadcast."""

    @pytest.mark.asyncio
    async def test_message_is_persisted_cached_and_broadcast(self, coordinator, message_store):
        customer = FakeWebSocket("customer")
        admin = FakeWebSocket("admin")
        session = await coordinator.join(customer, customer_claims())
        await coordinator.join(admin, admin_claims())

        message = await coordinator.handle_send_message(session, send_event("table for 4?"))

        assert message.senderId == "11"
        assert message.sender == "Cara"
        assert message.restaurantId == "3"
        assert message_store.list_messages_for_booking("42") == [message]
        assert coordinator.history["42"] == [message]
        assert customer.sent[-1] == {"type": "message", "data": message.model_dump(mode="json")}
        assert admin.sent[-1] == customer.sent[-1]

    @pytest.mark.asyncio
    async def test_sender_identity_comes_from_session(self, coordinator):
        session = await coordinator.join(FakeWebSocket("customer"), customer_claims())
        event = SendMessageEvent(bookingId="42", senderId="7", sender="Chef", message="hi")

        message = await coordinator.handle_send_message(session, event)
        assert message.senderId == "11"
        assert message.sender == "Cara"

    @pytest.mark.asyncio
    async def test_all_participants_see_same_order(self, coordinator):
        customer = FakeWebSocket("customer")
        admin = FakeWebSocket("admin")
        customer_session = await coordinator.join(customer, customer_claims())
        admin_session = await coordinator.join(admin, admin_claims())

        await coordinator.handle_send_message(customer_session, send_event("m1"))
        await coordinator.handle_send_message(admin_session, send_event("m2"))

        def bodies(ws):
            return [f["data"]["message"] for f in ws.sent if f["type"] == "message"]

        assert bodies(customer) == ["m1", "m2"]
        assert bodies(admin) == ["m1", "m2"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event", [
        SendMessageEvent(bookingId="42", message=""),
        SendMessageEvent(bookingId="42", message="   "),
        SendMessageEvent(bookingId="43", message="wrong room"),
    ])
    async def test_invalid_payloads_raise(self, coordinator, message_store, event):
        session = await coordinator.join(FakeWebSocket("customer"), customer_claims())
        with pytest.raises(ClaimsValidationError):
            await coordinator.handle_send_message(session, event)
        assert message_store.list_messages_for_booking("42") == []

    @pytest.mark.asyncio
    async def test_too_long_message_raises(self, booking_store, message_store):
        coordinator = ChatCoordinator(
            AuthorizationResolver(booking_store), message_store, max_message_length=5
        )
        session = await coordinator.join(FakeWebSocket("customer"), customer_claims())
        with pytest.raises(ClaimsValidationError):
            await coordinator.handle_send_message(session, send_event("too long"))

    @pytest.mark.asyncio
    async def test_persist_failure_is_never_broadcast(self, booking_store):
        store = MagicMock()
        store.list_messages_for_booking.return_value = []
        store.append_message.side_effect = StoreError("disk full", "append_message")
        coordinator = ChatCoordinator(AuthorizationResolver(booking_store), store)

        customer = FakeWebSocket("customer")
        admin = FakeWebSocket("admin")
        session = await coordinator.join(customer, customer_claims())
        await coordinator.join(admin, admin_claims())

        assert await coordinator.handle_send_message(session, send_event("lost")) is None
        assert "message" not in admin.types()
        assert customer.sent[-1] == {"type": "error", "data": {"message": "Failed to process message"}}
        assert coordinator.get_message_count("42") == 0

    @pytest.mark.asyncio
    async def test_unresolvable_booking_drops_message(self, coordinator, booking_store, message_store):
        session = await coordinator.join(FakeWebSocket("customer"), customer_claims())
        booking_store.delete_booking(42)
        coordinator.resolver.invalidate("42")

        assert await coordinator.handle_send_message(session, send_event("orphan")) is None
        assert message_store.list_messages_for_booking("42") == []

    @pytest.mark.asyncio
    async def test_send_before_hydration_is_picked_up_from_store(self, coordinator):
        session = await coordinator.join(FakeWebSocket("customer"), customer_claims())
        coordinator.history.clear()

        message = await coordinator.handle_send_message(session, send_event("later"))
        assert await coordinator.get_history("42") == [message]


class TestDisconnect:
    """Tests for leave and dead-connection cleanup."""

    @pytest.mark.asyncio
    async def test_disconnect_broadcasts_user_left(self, coordinator):
        customer = FakeWebSocket("customer")
        admin = FakeWebSocket("admin")
        await coordinator.join(customer, customer_claims())
        await coordinator.join(admin, admin_claims())

        session = await coordinator.disconnect(admin)

        assert session.username == "Chef"
        assert coordinator.get_room_size("42") == 1
        assert customer.sent[-1]["type"] == "userLeft"
        assert customer.sent[-1]["data"]["username"] == "Chef"

    @pytest.mark.asyncio
    async def test_disconnect_of_unknown_socket_is_noop(self, coordinator):
        assert await coordinator.disconnect(FakeWebSocket("stranger")) is None

    @pytest.mark.asyncio
    async def test_dead_connection_removed_during_broadcast(self, coordinator):
        customer = FakeWebSocket("customer")
        admin = FakeWebSocket("admin")
        session = await coordinator.join(customer, customer_claims())
        await coordinator.join(admin, admin_claims())
        admin.closed = True

        await coordinator.handle_send_message(session, send_event("anyone there?"))

        assert coordinator.get_room_size("42") == 1
        assert customer.types()[-2:] == ["message", "userLeft"]
        assert await coordinator.disconnect(admin) is None


class TestHistory:
    """Tests for history queries, preload and clear."""

    @pytest.mark.asyncio
    async def test_get_history_is_idempotent(self, coordinator):
        await _seed_message(coordinator, "one")
        await _seed_message(coordinator, "two")

        first = await coordinator.get_history("42")
        second = await coordinator.get_history("42")
        assert first == second
        assert [m.message for m in first] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_preload_history(self, coordinator):
        await _seed_message(coordinator, "one")
        coordinator.history.clear()

        assert await coordinator.preload_history() == 1
        assert coordinator.get_message_count("42") == 1

    @pytest.mark.asyncio
    async def test_clear_history_by_owner(self, coordinator, message_store):
        customer = FakeWebSocket("customer")
        session = await coordinator.join(customer, customer_claims())
        await coordinator.handle_send_message(session, send_event("bye"))

        assert await coordinator.clear_history("42", "7") is True

        assert message_store.list_messages_for_booking("42") == []
        assert coordinator.history["42"] == []
        assert customer.sent[-1] == {"type": "history", "data": []}

    @pytest.mark.asyncio
    async def test_clear_history_refused_for_other_admin(self, coordinator, message_store):
        await _seed_message(coordinator, "keep")

        assert await coordinator.clear_history("42", "9") is False
        assert await coordinator.clear_history("42", "11") is False
        assert await coordinator.clear_history("1000", "7") is False
        assert len(message_store.list_messages_for_booking("42")) == 1

    @pytest.mark.asyncio
    async def test_clear_history_store_failure(self, booking_store):
        store = MagicMock()
        store.list_messages_for_booking.return_value = []
        store.delete_messages_for_booking.side_effect = StoreError("locked", "delete_messages_for_booking")
        coordinator = ChatCoordinator(AuthorizationResolver(booking_store), store)

        assert await coordinator.clear_history("42", "7") is False
        assert "42" not in coordinator.history


async def _seed_message(coordinator, text):
    """Send a message through a throwaway customer session."""
    ws = FakeWebSocket("seed")
    session = await coordinator.join(ws, customer_claims())
    message = await coordinator.handle_send_message(session, send_event(text))
    await coordinator.disconnect(ws)
    return message


class TestUnresolvedBookings:
    """Unknown and deleted bookings leave no state behind."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("booking_id", ["1000", "nope", ""])
    async def test_get_history_of_unknown_booking(self, coordinator, booking_id):
        assert await coordinator.get_history(booking_id) == []
        assert coordinator.history == {}
        assert coordinator._locks == {}

    @pytest.mark.asyncio
    async def test_deleted_booking_history_is_ignored(self, booking_store, message_store):
        seeded = ChatCoordinator(AuthorizationResolver(booking_store), message_store)
        await _seed_message(seeded, "before delete")
        booking_store.delete_booking(42)

        coordinator = ChatCoordinator(AuthorizationResolver(booking_store), message_store)
        assert await coordinator.get_history("42") == []
        assert "42" not in coordinator.history

    @pytest.mark.asyncio
    async def test_preload_skips_deleted_bookings(self, booking_store, message_store):
        seeded = ChatCoordinator(AuthorizationResolver(booking_store), message_store)
        await _seed_message(seeded, "kept")
        ws = FakeWebSocket("seed")
        session = await seeded.join(ws, customer_claims(booking_id="5"))
        await seeded.handle_send_message(session, send_event("orphaned", booking_id="5"))
        booking_store.delete_booking(5)

        coordinator = ChatCoordinator(AuthorizationResolver(booking_store), message_store)
        assert await coordinator.preload_history() == 1
        assert list(coordinator.history) == ["42"]
        assert "5" not in coordinator._locks


class TestMessageBody:
    @pytest.mark.asyncio
    async def test_message_is_stored_as_sent(self, coordinator, message_store):
        session = await coordinator.join(FakeWebSocket("customer"), customer_claims())
        text = "  line1\n  indented\n"

        message = await coordinator.handle_send_message(session, send_event(text))

        assert message.message == text
        assert message_store.list_messages_for_booking("42")[0].message == text

    @pytest.mark.asyncio
    async def test_length_counts_the_message_as_sent(self, booking_store, message_store):
        coordinator = ChatCoordinator(
            AuthorizationResolver(booking_store), message_store, max_message_length=5
        )
        session = await coordinator.join(FakeWebSocket("customer"), customer_claims())
        with pytest.raises(ClaimsValidationError):
            await coordinator.handle_send_message(session, send_event(" abc  "))
