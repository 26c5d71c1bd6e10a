"""Minimal demonstration of a chat turn against the configured webhook."""

from plu_chat import create_chat_service

if __name__ == "__main__":
    with create_chat_service(user_id="demo-user") as service:
        service.open("doc-demo")
        question = "Quelle est la hauteur maximale autorisée en zone UA ?"
        outcome = service.send(question)
        print("User:", question)
        print("Assistant:", outcome.assistant_message.message if outcome.assistant_message else "")
