import pytest

from plu_chat.domain.exceptions import PersistenceError, ValidationError


def _conversation(persistence):
    return persistence.get_or_create_conversation("user-1", "doc-1")


def test_get_or_create_reuses_active_conversation(persistence):
    first = _conversation(persistence)
    second = _conversation(persistence)
    assert first.id == second.id
    assert persistence.get_active_conversation_id("user-1", "doc-1") == first.id
    assert persistence.get_active_conversation_id("user-1", "doc-2") is None
    assert persistence.get_active_conversation_id("", "doc-1") is None


def test_deactivate_then_create_starts_new_conversation(persistence):
    first = _conversation(persistence)
    persistence.deactivate_conversation(first.id)
    assert persistence.get_active_conversation_id("user-1", "doc-1") is None
    assert not persistence.get_conversation(first.id).is_active
    second = _conversation(persistence)
    assert second.id != first.id


def test_save_and_get_messages_in_order(persistence):
    conv = _conversation(persistence)
    user = persistence.save_message(conv.id, "user-1", "doc-1", "user", "  Bonjour  ")
    reply = persistence.save_message(
        conv.id, "user-1", "doc-1", "assistant", "Salut", {"reply_to_message_id": user.id}
    )
    messages = persistence.get_messages(conv.id)
    assert [m.id for m in messages] == [user.id, reply.id]
    assert messages[0].message == "Bonjour"
    assert messages[1].reply_to_message_id == user.id
    assert not messages[1].is_temporary
    assert persistence.get_conversation(conv.id).last_message_at is not None


def test_save_message_validation(persistence):
    conv = _conversation(persistence)
    with pytest.raises(ValidationError):
        persistence.save_message(conv.id, "user-1", "doc-1", "user", "   ")
    with pytest.raises(ValidationError) as exc:
        persistence.save_message(conv.id, "user-1", "doc-1", "system", "hi")
    assert exc.value.code == "INVALID_ROLE"
    with pytest.raises(ValidationError):
        persistence.get_or_create_conversation("", "doc-1")


def test_finalize_turn_is_idempotent(persistence):
    conv = _conversation(persistence)
    persistence.save_message(conv.id, "user-1", "doc-1", "user", "Première question")
    user = persistence.save_message(conv.id, "user-1", "doc-1", "user", "Deuxième question")

    first = persistence.finalize_turn(conv.id, "user-1", "doc-1", user.id, "Réponse")
    second = persistence.finalize_turn(conv.id, "user-1", "doc-1", user.id, "Réponse rejouée")

    assert first.assistant_message_id == second.assistant_message_id
    assert first.conversation_turn == 2
    assistants = [m for m in persistence.get_messages(conv.id) if m.role == "assistant"]
    assert len(assistants) == 1
    assert assistants[0].message == "Réponse"
    assert assistants[0].metadata == {"reply_to_message_id": user.id, "finalized": True}


def test_finalize_turn_reuses_reply_saved_by_server(persistence):
    conv = _conversation(persistence)
    user = persistence.save_message(conv.id, "user-1", "doc-1", "user", "Question")
    saved = persistence.save_message(
        conv.id, "user-1", "doc-1", "assistant", "Déjà là", {"reply_to_message_id": user.id}
    )
    result = persistence.finalize_turn(conv.id, "user-1", "doc-1", user.id, "Autre texte")
    assert result.assistant_message_id == saved.id


def test_finalize_turn_errors(persistence):
    conv = _conversation(persistence)
    with pytest.raises(ValidationError):
        persistence.finalize_turn(conv.id, "user-1", "doc-1", "m-unknown", "  ")
    with pytest.raises(PersistenceError) as exc:
        persistence.finalize_turn(conv.id, "user-1", "doc-1", "m-unknown", "Réponse")
    assert exc.value.code == "USER_MESSAGE_NOT_FOUND"


def test_missing_conversation_is_persistence_error(persistence):
    with pytest.raises(PersistenceError):
        persistence.get_conversation("c-missing")
    assert persistence.get_messages("c-missing") == []
