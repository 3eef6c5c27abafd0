import asyncio
from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from market_chat.core.exceptions import InvalidArgument, NotFound
from market_chat.models.chat import AttachmentRef, MessageSender
from market_chat.models.user import ChatRole, Identity
from market_chat.services.chat_store import unread_for


async def test_order_chat_is_created_once(store):
    order_id = str(ObjectId())

    first, created = await store.create_or_get_order_chat(order_id, "cust-1")
    again, created_again = await store.create_or_get_order_chat(order_id, "cust-1")

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert again.messages == []


async def test_concurrent_order_chat_creation_yields_one_chat(store, db):
    order_id = str(ObjectId())

    results = await asyncio.gather(
        store.create_or_get_order_chat(order_id, "cust-1"),
        store.create_or_get_order_chat(order_id, "cust-1"),
    )

    assert {chat.id for chat, _ in results} == {results[0][0].id}
    assert sorted(created for _, created in results) == [False, True]
    assert db.sync.chats.count_documents({"order_id": order_id}) == 1


async def test_general_chats_do_not_collide_on_order_index(store):
    a = await store.create_general_chat("cust-1", "Shipping", "Where is my parcel?")
    b = await store.create_general_chat("cust-1", "Returns", "How do I return?")

    assert a.id != b.id
    assert a.order_id is None and not a.is_order_chat
    assert a.messages[0].sender == MessageSender.USER


async def test_general_chat_requires_subject_and_content(store):
    with pytest.raises(InvalidArgument):
        await store.create_general_chat("cust-1", "  ", "hello")
    with pytest.raises(InvalidArgument):
        await store.create_general_chat("cust-1", "Subject", "   ")


async def test_open_order_chat_announces_new_chat(store):
    order = {"_id": ObjectId(), "user_id": "cust-1", "order_number": "ORD-7"}

    chat, created = await store.open_order_chat(order)
    again, created_again = await store.open_order_chat(order)

    assert created and not created_again
    assert [m.sender for m in chat.messages] == [MessageSender.SYSTEM]
    assert chat.messages[0].content == "Chat started for order #ORD-7"
    assert len(again.messages) == 1


async def test_messages_keep_append_order(store):
    chat, _ = await store.create_or_get_order_chat(str(ObjectId()), "cust-1")

    for i in range(5):
        await store.append_message(chat.id, MessageSender.USER, f"m{i}", sender_id="cust-1")

    stored = await store.get(chat.id)
    assert [m.content for m in stored.messages] == ["m0", "m1", "m2", "m3", "m4"]
    timestamps = [m.timestamp for m in stored.messages]
    assert timestamps == sorted(timestamps)


async def test_concurrent_appends_are_both_kept(store):
    chat, _ = await store.create_or_get_order_chat(str(ObjectId()), "cust-1")

    await asyncio.gather(
        store.append_message(chat.id, MessageSender.USER, "from customer", sender_id="cust-1"),
        store.append_message(chat.id, MessageSender.ADMIN, "from admin", sender_id="admin-1"),
    )

    stored = await store.get(chat.id)
    assert sorted(m.content for m in stored.messages) == ["from admin", "from customer"]
    assert len({m.id for m in stored.messages}) == 2


async def test_concurrent_appends_are_stamped_in_array_order(store, monkeypatch):
    chat, _ = await store.create_or_get_order_chat(str(ObjectId()), "cust-1")
    real_update = store.chats.update_one
    delayed = []

    async def slow_first_write(*args, **kwargs):
        if not delayed:
            delayed.append(True)
            await asyncio.sleep(0.05)
        return await real_update(*args, **kwargs)

    monkeypatch.setattr(store.chats, "update_one", slow_first_write)

    await asyncio.gather(
        store.append_message(chat.id, MessageSender.USER, "first", sender_id="cust-1"),
        store.append_message(chat.id, MessageSender.USER, "second", sender_id="cust-1"),
    )

    stored = await store.get(chat.id)
    assert [m.content for m in stored.messages] == ["first", "second"]
    assert stored.messages[0].timestamp < stored.messages[1].timestamp


async def test_append_is_stamped_after_a_newer_stored_message(store, db, make_chat):
    ahead = datetime.utcnow() + timedelta(hours=1)
    chat_id = make_chat("cust-1", order_id=str(ObjectId()), messages=[("admin", "Sent from a fast clock")])
    db.sync.chats.update_one({"_id": ObjectId(chat_id)}, {"$set": {"messages.0.timestamp": ahead}})

    message = await store.append_message(chat_id, MessageSender.USER, "Reply", sender_id="cust-1")

    stored = await store.get(chat_id)
    assert [m.content for m in stored.messages] == ["Sent from a fast clock", "Reply"]
    assert message.timestamp > ahead
    assert stored.messages[1].timestamp == message.timestamp


async def test_first_order_message_creates_chat_with_it(store):
    order_id = str(ObjectId())

    chat, message, created = await store.post_to_order(
        order_id, "cust-1", MessageSender.USER, "Where is it?", sender_id="cust-1"
    )
    again, reply, created_again = await store.post_to_order(
        order_id, "cust-1", MessageSender.ADMIN, "Shipped today", sender_id="admin-1"
    )

    assert created and not created_again
    assert again.id == chat.id
    assert [m.content for m in chat.messages] == ["Where is it?"]
    assert message.sender == MessageSender.USER
    stored = await store.get(chat.id)
    assert [m.id for m in stored.messages] == [message.id, reply.id]
    assert stored.admin_id == "admin-1"


async def test_admin_first_order_message_assigns_chat(store):
    chat, _, created = await store.post_to_order(
        str(ObjectId()), "cust-1", MessageSender.ADMIN, "Your parcel is delayed", sender_id="admin-1"
    )

    assert created
    assert (await store.get(chat.id)).admin_id == "admin-1"


async def test_concurrent_first_order_messages_share_one_chat(store, db):
    order_id = str(ObjectId())

    results = await asyncio.gather(
        store.post_to_order(order_id, "cust-1", MessageSender.USER, "one", sender_id="cust-1"),
        store.post_to_order(order_id, "cust-1", MessageSender.USER, "two", sender_id="cust-1"),
    )

    assert sorted(created for _, _, created in results) == [False, True]
    assert db.sync.chats.count_documents({"order_id": order_id}) == 1
    stored = await store.find_by_order(order_id)
    assert sorted(m.content for m in stored.messages) == ["one", "two"]


async def test_empty_first_order_message_creates_nothing(store, db):
    with pytest.raises(InvalidArgument):
        await store.post_to_order(str(ObjectId()), "cust-1", MessageSender.USER, "  ", sender_id="cust-1")

    assert db.sync.chats.count_documents({}) == 0


async def test_append_rejects_empty_message(store):
    chat, _ = await store.create_or_get_order_chat(str(ObjectId()), "cust-1")

    with pytest.raises(InvalidArgument):
        await store.append_message(chat.id, MessageSender.USER, "  ", sender_id="cust-1")

    assert (await store.get(chat.id)).messages == []


async def test_attachment_only_message_is_accepted(store):
    chat, _ = await store.create_or_get_order_chat(str(ObjectId()), "cust-1")
    ref = AttachmentRef(filename="receipt.pdf", content_type="application/pdf", size=10, handle="h1")

    message = await store.append_message(chat.id, MessageSender.USER, "", [ref], sender_id="cust-1")

    assert message.content == ""
    assert message.attachments[0].filename == "receipt.pdf"


async def test_append_to_unknown_chat(store):
    with pytest.raises(NotFound):
        await store.append_message(str(ObjectId()), MessageSender.USER, "hi")
    with pytest.raises(NotFound):
        await store.append_message("not-an-id", MessageSender.USER, "hi")


async def test_first_admin_reply_assigns_chat(store):
    chat, _ = await store.create_or_get_order_chat(str(ObjectId()), "cust-1")

    await store.append_message(chat.id, MessageSender.ADMIN, "On it", sender_id="admin-1")
    await store.append_message(chat.id, MessageSender.ADMIN, "Me too", sender_id="admin-2")

    assert (await store.get(chat.id)).admin_id == "admin-1"


async def test_only_customer_messages_reopen_a_closed_chat(store):
    chat, _ = await store.create_or_get_order_chat(str(ObjectId()), "cust-1")
    await store.set_open(chat.id, False)

    await store.append_message(chat.id, MessageSender.ADMIN, "Closing note", sender_id="admin-1")
    await store.append_system_message(chat.id, "Chat closed by support")
    assert (await store.get(chat.id)).open is False

    await store.append_message(chat.id, MessageSender.USER, "One more thing", sender_id="cust-1")
    assert (await store.get(chat.id)).open is True


async def test_set_open_is_idempotent(store):
    chat, _ = await store.create_or_get_order_chat(str(ObjectId()), "cust-1")

    _, changed = await store.set_open(chat.id, False)
    closed, changed_again = await store.set_open(chat.id, False)

    assert changed is True
    assert changed_again is False
    assert closed.open is False


async def test_general_chats_cannot_be_closed(store):
    chat = await store.create_general_chat("cust-1", "Question", "Hello")

    with pytest.raises(InvalidArgument):
        await store.set_open(chat.id, False)


async def test_mark_read_flips_only_the_other_side(store):
    chat, _ = await store.create_or_get_order_chat(str(ObjectId()), "cust-1")
    await store.append_message(chat.id, MessageSender.USER, "Hi", sender_id="cust-1")
    await store.append_message(chat.id, MessageSender.ADMIN, "Hello", sender_id="admin-1")
    await store.append_message(chat.id, MessageSender.ADMIN, "How can I help?", sender_id="admin-1")

    assert await store.mark_read(chat.id, ChatRole.USER) == 2
    assert await store.mark_read(chat.id, ChatRole.USER) == 0

    stored = await store.get(chat.id)
    assert [m.read for m in stored.messages] == [False, True, True]
    assert unread_for(stored, ChatRole.ADMIN) == 1
    assert unread_for(stored, ChatRole.USER) == 0


async def test_concurrent_mark_read_counts_each_message_once(store):
    chat, _ = await store.create_or_get_order_chat(str(ObjectId()), "cust-1")
    for text in ("a", "b", "c"):
        await store.append_message(chat.id, MessageSender.USER, text, sender_id="cust-1")

    counts = await asyncio.gather(
        store.mark_read(chat.id, ChatRole.ADMIN),
        store.mark_read(chat.id, ChatRole.ADMIN),
    )

    assert sorted(counts) == [0, 3]


async def test_mark_read_unknown_chat(store):
    with pytest.raises(NotFound):
        await store.mark_read(str(ObjectId()), ChatRole.USER)


async def test_get_by_id_pages_back_from_newest(store):
    chat, _ = await store.create_or_get_order_chat(str(ObjectId()), "cust-1")
    for i in range(7):
        await store.append_message(chat.id, MessageSender.USER, str(i), sender_id="cust-1")

    first = await store.get_by_id(chat.id, page=1, page_size=3)
    second = await store.get_by_id(chat.id, page=2, page_size=3)
    last = await store.get_by_id(chat.id, page=3, page_size=3)
    beyond = await store.get_by_id(chat.id, page=4, page_size=3)

    assert [m.content for m in first["chat"].messages] == ["4", "5", "6"]
    assert [m.content for m in second["chat"].messages] == ["1", "2", "3"]
    assert [m.content for m in last["chat"].messages] == ["0"]
    assert beyond["chat"].messages == []
    assert first["total"] == 7
    assert first["pages"] == 3


async def test_get_by_id_rejects_bad_page(store):
    chat, _ = await store.create_or_get_order_chat(str(ObjectId()), "cust-1")

    with pytest.raises(InvalidArgument):
        await store.get_by_id(chat.id, page=0)


async def test_lists_are_most_recent_first(store, db):
    older = await store.create_general_chat("cust-1", "Older", "first")
    newer = await store.create_general_chat("cust-1", "Newer", "second")
    await store.create_general_chat("cust-2", "Someone else", "third")

    now = datetime.utcnow()
    db.sync.chats.update_one({"_id": ObjectId(older.id)}, {"$set": {"updated_at": now - timedelta(hours=2)}})
    db.sync.chats.update_one({"_id": ObjectId(newer.id)}, {"$set": {"updated_at": now - timedelta(hours=1)}})
    assert [c.id for c in await store.list_for_customer("cust-1")] == [newer.id, older.id]

    await store.append_message(older.id, MessageSender.USER, "bump", sender_id="cust-1")

    mine = await store.list_for_customer("cust-1")
    assert [c.id for c in mine] == [older.id, newer.id]
    assert len(await store.list_for_admin()) == 3


async def test_list_for_admin_filters_on_open(store):
    chat, _ = await store.create_or_get_order_chat(str(ObjectId()), "cust-1")
    await store.create_or_get_order_chat(str(ObjectId()), "cust-2")
    await store.set_open(chat.id, False)

    closed = await store.list_for_admin(open=False)
    assert [c.id for c in closed] == [chat.id]
    assert len(await store.list_for_admin(open=True)) == 1


async def test_unread_summary(store):
    chat = await store.create_general_chat("cust-1", "Help", "first")
    await store.append_message(chat.id, MessageSender.ADMIN, "reply", sender_id="admin-1")
    await store.append_message(chat.id, MessageSender.ADMIN, "reply 2", sender_id="admin-1")

    customer = Identity(id="cust-1", role=ChatRole.USER)
    staff = Identity(id="admin-1", role=ChatRole.ADMIN)

    assert await store.unread_summary(customer) == {"total_unread": 2, "chats_with_unread": 1}
    assert await store.unread_summary(staff) == {"total_unread": 1, "chats_with_unread": 1}
