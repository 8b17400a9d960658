"""Tests for the socket event contract: inbound parsing and outbound payloads."""
from datetime import datetime, timezone

from duochat.connection.events import (
    ChatMessageReceived,
    EventName,
    LiveTypingAction,
    MessageSaved,
    MessageStatusChanged,
    OnlineUsers,
    UserLiveTyping,
    UserOffline,
    UserOnline,
    chat_message_payload,
    live_typing_payload,
    parse_event,
    seen_payload,
    typing_payload,
)
from duochat.messages.schemas import MessageStatus


class TestParseEvent:
    """Validation at the ingestion boundary."""

    def test_chat_message(self):
        event = parse_event("chat-message", {
            "roomId": "r1",
            "message": "hello",
            "userId": "alice",
            "id": 17,
            "timestamp": "2024-05-01T10:00:00Z",
        })
        assert isinstance(event, ChatMessageReceived)
        assert event.messageId == "17"
        assert event.timestamp == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def test_accepts_enum_name(self):
        event = parse_event(EventName.MESSAGE_SAVED, {"tempId": "tmp-1", "messageId": 99})
        assert isinstance(event, MessageSaved)
        assert event.realId == "99"

    def test_real_id_alias(self):
        event = parse_event("message-saved", {"tempId": "tmp-1", "realId": "m1"})
        assert event.realId == "m1"

    def test_unknown_event_is_ignored(self):
        assert parse_event("something-else", {"a": 1}) is None

    def test_lifecycle_events_are_not_inbound_payloads(self):
        assert parse_event("connect", {}) is None

    def test_malformed_payload_returns_none(self, caplog):
        """Missing required fields are dropped with a warning, never raised."""
        assert parse_event("chat-message", {"roomId": "r1"}) is None
        assert "malformed chat-message" in caplog.text

    def test_non_object_payload_returns_none(self):
        assert parse_event("chat-message", "hello") is None

    def test_extra_fields_ignored(self):
        event = parse_event("user-typing", {"userId": "bob", "isTyping": False, "extra": 1})
        assert event.isTyping is False

    def test_bare_presence_payloads(self):
        online = parse_event("user-online", "bob")
        offline = parse_event("user-offline", {"userId": 7})
        everyone = parse_event("online-users", ["a", "b", 3])
        assert isinstance(online, UserOnline) and online.userId == "bob"
        assert isinstance(offline, UserOffline) and offline.userId == "7"
        assert isinstance(everyone, OnlineUsers) and everyone.users == ["a", "b", "3"]

    def test_live_typing_rejects_negative_cursor(self):
        assert parse_event("user-live-typing", {"userId": "bob", "cursorPosition": -1}) is None

    def test_live_typing_action(self):
        event = parse_event("user-live-typing", {"userId": "bob", "action": "backspace", "cursorPosition": 2})
        assert isinstance(event, UserLiveTyping)
        assert event.action is LiveTypingAction.BACKSPACE
        assert event.content is None


class TestStatusEvents:
    """One model covers every status/seen event name."""

    def test_seen_event_implies_seen_status(self):
        event = parse_event("broadcast-message-seen", {"messageId": "m1", "userId": "bob"})
        assert isinstance(event, MessageStatusChanged)
        assert event.effective_status is MessageStatus.SEEN
        assert event.reporters == ["bob"]

    def test_status_update_without_status_has_no_effect(self):
        event = parse_event("message-status-update", {"messageId": "m1"})
        assert event.effective_status is None

    def test_explicit_status_wins(self):
        event = parse_event("message-status-update", {"messageId": 5, "status": "delivered"})
        assert event.messageId == "5"
        assert event.effective_status is MessageStatus.DELIVERED

    def test_seen_by_scalar_and_list(self):
        scalar = parse_event("message-seen", {"messageId": "m1", "userId": "x", "seenBy": "bob"})
        listed = parse_event("message-seen", {"messageId": "m1", "seenBy": ["bob", "carol"]})
        assert scalar.reporters == ["bob"]
        assert listed.reporters == ["bob", "carol"]

    def test_unknown_status_value_is_rejected(self):
        assert parse_event("message-status-update", {"messageId": "m1", "status": "read"}) is None


class TestOutboundPayloads:
    def test_chat_message_payload(self):
        ts = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        payload = chat_message_payload("r1", "hi", "me", "tmp-1", ts)
        assert payload == {
            "roomId": "r1",
            "message": "hi",
            "userId": "me",
            "tempId": "tmp-1",
            "timestamp": "2024-01-02T03:04:05+00:00",
        }

    def test_typing_payload(self):
        assert typing_payload("r1", "me", True) == {"roomId": "r1", "userId": "me", "isTyping": True}

    def test_live_typing_snapshot_carries_content(self):
        payload = live_typing_payload("r1", "me", LiveTypingAction.TYPING, "abc", 3)
        assert payload["content"] == "abc"
        assert payload["cursorPosition"] == 3
        assert payload["action"] == "typing"
        assert isinstance(payload["timestamp"], int)

    def test_special_key_payload_has_no_content(self):
        payload = live_typing_payload("r1", "me", LiveTypingAction.DELETE, cursor_position=1)
        assert "content" not in payload
        assert payload["cursorPosition"] == 1

    def test_seen_payload(self):
        assert seen_payload("m1", "me", "bob", "r1") == {
            "messageId": "m1",
            "userId": "me",
            "senderId": "bob",
            "roomId": "r1",
            "status": "seen",
            "seenBy": "me",
        }
