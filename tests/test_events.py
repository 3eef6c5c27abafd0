from datetime import datetime

import pytest

from market_chat.core.exceptions import InvalidArgument
from market_chat.models.chat import AttachmentRef, Chat, Message, MessageSender
from market_chat.schemas.events import (
    AttachmentIn,
    ChatNotificationOut,
    MarkReadIn,
    NewMessageIn,
    NewMessageOut,
    parse_event,
)


def make_message(content="", attachments=()):
    return Message(
        _id="m1",
        sender=MessageSender.USER,
        sender_id="cust-1",
        content=content,
        attachments=list(attachments),
        timestamp=datetime(2024, 5, 1, 12, 0, 0),
    )


def test_inbound_accepts_camel_and_snake_case():
    assert parse_event(NewMessageIn, {"chatId": "c1", "content": "hi"}).chat_id == "c1"
    assert parse_event(NewMessageIn, {"order_id": "o1", "content": "hi"}).order_id == "o1"


def test_invalid_payload_is_invalid_argument():
    with pytest.raises(InvalidArgument, match="chatId"):
        parse_event(MarkReadIn, {})
    with pytest.raises(InvalidArgument):
        parse_event(MarkReadIn, None)


def test_attachment_must_be_base64():
    with pytest.raises(InvalidArgument, match="base64"):
        AttachmentIn(filename="a.png", data="***").to_upload()

    upload = AttachmentIn(filename="a.txt", content_type="text/plain", data="aGk=").to_upload()
    assert upload.data == b"hi"
    assert upload.size == 2


def test_new_message_out_uses_camel_case():
    chat = Chat(_id="c1", customer_id="cust-1", order_id="o1", is_order_chat=True)
    ref = AttachmentRef(filename="a.pdf", content_type="application/pdf", size=3, handle="h")

    data = NewMessageOut.build(chat, make_message("hello", [ref])).dump()

    assert data["chatId"] == "c1"
    assert data["orderId"] == "o1"
    assert data["messageId"] == "m1"
    assert data["sender"] == {"id": "cust-1", "role": "user"}
    assert data["attachments"] == [{"filename": "a.pdf", "contentType": "application/pdf", "size": 3}]
    assert data["timestamp"] == "2024-05-01T12:00:00"
    assert "handle" not in str(data)


def test_notification_preview():
    chat = Chat(_id="c1", customer_id="cust-1", subject="Help")
    ref = AttachmentRef(filename="a.pdf", content_type="application/pdf", size=3, handle="h")

    long_text = ChatNotificationOut.build(chat, make_message("x" * 150)).dump()
    files_only = ChatNotificationOut.build(chat, make_message("", [ref, ref])).dump()

    assert len(long_text["preview"]) == 100
    assert files_only["preview"] == "[2 attachment(s)]"
    assert files_only["isOrderChat"] is False
