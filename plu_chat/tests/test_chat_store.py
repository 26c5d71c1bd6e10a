import pytest

from plu_chat.domain.exceptions import PersistenceError, ValidationError
from plu_chat.domain.models import ChatMessage
from plu_chat.stores.chat_store import ChatStore


@pytest.fixture
def store(persistence):
    store = ChatStore(persistence, user_id="user-1")
    store.initialize_chat("doc-1")
    return store


def test_initialize_chat_without_conversation(store):
    assert store.current_document_id == "doc-1"
    assert store.current_conversation_id is None
    assert store.messages == []


def test_initialize_chat_loads_existing_conversation(persistence):
    conv = persistence.get_or_create_conversation("user-1", "doc-1")
    persistence.save_message(conv.id, "user-1", "doc-1", "user", "Bonjour")
    store = ChatStore(persistence, user_id="user-1")
    assert store.initialize_chat("doc-1") is True
    assert store.current_conversation_id == conv.id
    assert [m.message for m in store.messages] == ["Bonjour"]


def test_initialize_chat_requires_user(persistence):
    store = ChatStore(persistence)
    with pytest.raises(ValidationError):
        store.initialize_chat("doc-1")
    assert store.error == "Utilisateur non authentifié"


def test_add_message_creates_conversation_and_appends(store, persistence):
    msg = store.add_message("user", "Bonjour")
    assert store.current_conversation_id is not None
    assert store.messages == [msg]
    assert persistence.get_messages(store.current_conversation_id)[0].id == msg.id


def test_add_message_failure_leaves_list_unchanged(store, monkeypatch):
    store.add_message("user", "Bonjour")
    before = list(store.messages)

    def boom(*args, **kwargs):
        raise PersistenceError(code="STORE_WRITE_ERROR", message="disk full")

    monkeypatch.setattr(store.persistence, "save_message", boom)
    with pytest.raises(PersistenceError):
        store.add_message("user", "Encore")
    assert store.messages == before
    assert store.error == "disk full"


def test_temporary_message_replaced_in_place(store):
    user = store.add_message("user", "Question")
    temp = store.add_temporary_message("assistant", "")
    store.add_message("user", "Suite")
    assert store.append_to_temporary_message(temp.id, "Répon")
    assert store.append_to_temporary_message(temp.id, "se")
    assert store.find(temp.id).message == "Réponse"

    saved = ChatMessage(id="m-saved", role="assistant", message="Réponse", metadata={"reply_to_message_id": user.id})
    assert store.replace_temporary_message(temp.id, saved)
    assert [m.id for m in store.messages][1] == "m-saved"
    assert len(store.messages) == 3
    assert store.find(temp.id) is None


def test_replace_drops_temporary_when_counterpart_loaded(store):
    user = store.add_message("user", "Question")
    temp = store.add_temporary_message("assistant", "Réponse")
    loaded = ChatMessage(id="m-server", role="assistant", message="Réponse", metadata={"reply_to_message_id": user.id})
    store.messages.append(loaded)
    saved = ChatMessage(id="m-other", role="assistant", message="Réponse", metadata={"reply_to_message_id": user.id})
    assert store.replace_temporary_message(temp.id, saved)
    assert [m.id for m in store.messages] == [user.id, "m-server"]


def test_update_and_remove_only_touch_temporary(store):
    user = store.add_message("user", "Question")
    assert not store.update_temporary_message_content(user.id, "hack")
    assert not store.append_to_temporary_message(user.id, "hack")
    assert not store.remove_temporary_message(user.id)
    assert store.find(user.id).message == "Question"

    temp = store.add_temporary_message("assistant", "…")
    assert store.update_temporary_message_content(temp.id, "Texte")
    assert store.find(temp.id).message == "Texte"
    assert store.remove_temporary_message(temp.id)
    assert store.messages == [user]
    assert not store.replace_temporary_message("temp-missing", user)


def test_mark_persisted_keeps_message(store):
    temp = store.add_temporary_message("assistant", "Réponse")
    kept = store.mark_persisted(temp.id)
    assert kept is temp
    assert not kept.is_temporary
    assert store.mark_persisted(temp.id) is None


def test_load_messages_dedupes_replies(store, persistence):
    user = store.add_message("user", "Question")
    conv_id = store.current_conversation_id
    first = persistence.save_message(conv_id, "user-1", "doc-1", "assistant", "A", {"reply_to_message_id": user.id})
    persistence.save_message(conv_id, "user-1", "doc-1", "assistant", "B", {"reply_to_message_id": user.id})
    store.load_messages()
    assert [m.id for m in store.messages] == [user.id, first.id]
    assert store.find_reply(user.id).id == first.id


def test_find_reply_ignores_temporary(store):
    user = store.add_message("user", "Question")
    temp = store.add_temporary_message("assistant", "Réponse")
    temp.metadata["reply_to_message_id"] = user.id
    assert store.find_reply(user.id) is None


def test_clear_chat_deactivates_conversation(store, persistence):
    store.add_message("user", "Question")
    conv_id = store.current_conversation_id
    store.open_popup()
    store.clear_chat()
    assert store.messages == []
    assert store.current_conversation_id is None
    assert not store.is_popup_open
    assert persistence.get_active_conversation_id("user-1", "doc-1") is None
    assert not persistence.get_conversation(conv_id).is_active


def test_streaming_preview_cleared_when_streaming_stops(store):
    store.update_streaming_preview("Hel")
    assert store.is_streaming
    assert store.streaming_preview == "Hel"
    store.set_streaming(False)
    assert store.streaming_preview == ""


def test_reset_chat(store):
    store.add_message("user", "Question")
    store.reset_chat()
    assert store.current_document_id is None
    assert store.current_conversation_id is None
    assert not store.has_messages


def test_load_messages_keeps_client_only_entries_in_place(store, persistence):
    first = store.add_message("user", "Premier")
    kept = store.mark_persisted(store.add_temporary_message("assistant", "Réponse locale").id)
    kept.metadata["reply_to_message_id"] = first.id
    local = store.add_local_message("assistant", "Erreur", {"isError": True})
    second = store.add_message("user", "Second")

    store.load_messages()
    assert [m.id for m in store.messages] == [first.id, kept.id, local.id, second.id]

    persistence.save_message(
        store.current_conversation_id, "user-1", "doc-1", "assistant", "Réponse serveur",
        {"reply_to_message_id": first.id},
    )
    store.load_messages()
    assert kept.id not in [m.id for m in store.messages]
    assert [m.message for m in store.messages] == ["Premier", "Erreur", "Second", "Réponse serveur"]
