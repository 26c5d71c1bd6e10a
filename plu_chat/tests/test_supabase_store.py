import pytest

from conftest import FakeResponse, SettingsStub, json_response
from plu_chat.domain.exceptions import PersistenceError, ValidationError
from plu_chat.infrastructure.storage.supabase_store import SupabaseChatPersistence


BASE = "https://project.supabase.test/rest/v1"


def test_requires_supabase_config():
    class Missing(SettingsStub):
        supabase_key = None

    with pytest.raises(ValidationError):
        SupabaseChatPersistence(Missing())


def test_get_or_create_returns_existing_row(install_http, settings_stub):
    row = {"id": "conv-1", "user_id": "u", "document_id": "d", "is_active": True, "created_at": "2024-05-01T10:00:00Z"}
    fake = install_http(lambda call: json_response([row]))
    conv = SupabaseChatPersistence(settings_stub).get_or_create_conversation("u", "d")
    assert conv.id == "conv-1"
    assert len(fake.calls) == 1
    call = fake.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == f"{BASE}/chat_conversations"
    assert call["params"]["is_active"] == "eq.true"
    assert call["headers"]["apikey"] == settings_stub.supabase_key


def test_get_or_create_inserts_when_missing(install_http, settings_stub):
    def handler(call):
        if call["method"] == "GET":
            return json_response([])
        return json_response([{"id": "conv-new", "user_id": "u", "document_id": "d", "is_active": True}], 201)

    fake = install_http(handler)
    conv = SupabaseChatPersistence(settings_stub).get_or_create_conversation("u", "d")
    assert conv.id == "conv-new"
    assert fake.calls[1]["json"] == {"user_id": "u", "document_id": "d", "is_active": True}


def test_save_message_sends_reply_column(install_http, settings_stub):
    def handler(call):
        if call["method"] == "PATCH":
            return FakeResponse(204)
        return json_response([dict(call["json"], id="msg-9", created_at="2024-05-01T10:00:01Z")], 201)

    fake = install_http(handler)
    msg = SupabaseChatPersistence(settings_stub).save_message(
        "conv-1", "u", "d", "assistant", " Réponse ", {"reply_to_message_id": "msg-1"}
    )
    assert msg.id == "msg-9"
    assert msg.message == "Réponse"
    assert msg.reply_to_message_id == "msg-1"
    insert, touch = fake.calls
    assert insert["url"] == f"{BASE}/chat_messages"
    assert insert["json"]["reply_to_message_id"] == "msg-1"
    assert touch["method"] == "PATCH"
    assert touch["params"] == {"id": "eq.conv-1"}


def test_get_messages_merges_reply_column(install_http, settings_stub):
    rows = [
        {"id": "1", "role": "user", "message": "Q", "created_at": "2024-05-01T10:00:00Z"},
        {"id": "2", "role": "assistant", "message": "R", "reply_to_message_id": "1", "created_at": "2024-05-01T10:00:01Z"},
    ]
    install_http(lambda call: json_response(rows))
    messages = SupabaseChatPersistence(settings_stub).get_messages("conv-1")
    assert [m.id for m in messages] == ["1", "2"]
    assert messages[1].reply_to_message_id == "1"


def test_finalize_turn_calls_rpc(install_http, settings_stub):
    fake = install_http(lambda call: json_response([{"assistant_message_id": 42, "conversation_turn": 3}]))
    result = SupabaseChatPersistence(settings_stub).finalize_turn("conv-1", "u", "d", "msg-1", "Réponse")
    assert result.assistant_message_id == "42"
    assert result.conversation_turn == 3
    call = fake.calls[0]
    assert call["url"] == f"{BASE}/rpc/finalize_chat_turn"
    assert call["json"]["p_user_message_id"] == "msg-1"
    assert call["json"]["p_ai_text"] == "Réponse"


def test_error_status_raises_persistence_error(install_http, settings_stub):
    install_http(lambda call: FakeResponse(500, {"Content-Type": "text/plain"}, "boom"))
    with pytest.raises(PersistenceError) as exc:
        SupabaseChatPersistence(settings_stub).get_messages("conv-1")
    assert exc.value.code == "SUPABASE_ERROR"
    assert exc.value.http_status == 500


def test_save_message_survives_failed_timestamp_update(install_http, settings_stub):
    def handler(call):
        if call["method"] == "PATCH":
            return FakeResponse(500, {"Content-Type": "text/plain"}, "boom")
        return json_response([dict(call["json"], id="msg-10")], 201)

    fake = install_http(handler)
    msg = SupabaseChatPersistence(settings_stub).save_message("conv-1", "u", "d", "user", "Question")
    assert msg.id == "msg-10"
    assert [c["method"] for c in fake.calls] == ["POST", "PATCH"]
