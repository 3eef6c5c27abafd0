"""Chat endpoints"""

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, status
from datetime import datetime, timezone
from typing import List, Optional

from market_chat.api.deps import get_current_identity, require_admin
from market_chat.config import settings
from market_chat.core.exceptions import InvalidArgument
from market_chat.models.user import Identity
from market_chat.schemas.chat_schema import (
    ChatResponse,
    ChatWithMessagesResponse,
    MarkReadResponse,
    MessageResponse,
    PollResponse,
    SendMessageResponse,
    UnreadSummaryResponse,
)
from market_chat.services.attachment_store import AttachmentUpload
from market_chat.services.chat_service import ChatService, SentMessage, get_chat_service
from market_chat.services.chat_store import unread_for

router = APIRouter()


async def read_uploads(files: Optional[List[UploadFile]]) -> List[AttachmentUpload]:
    """
    Read uploaded files into memory for admission.

    Reads at most one byte past the size limit per file, so oversized files
    are rejected without buffering them whole.
    """
    files = [f for f in (files or []) if f.filename]
    if len(files) > settings.attachment_max_count:
        raise InvalidArgument(f"At most {settings.attachment_max_count} attachments are allowed per message")

    uploads = []
    for f in files:
        data = await f.read(settings.attachment_max_bytes + 1)
        uploads.append(AttachmentUpload(
            filename=f.filename,
            content_type=f.content_type or "application/octet-stream",
            data=data,
        ))
    return uploads


def sent_response(sent: SentMessage) -> SendMessageResponse:
    return SendMessageResponse(
        chat_id=sent.chat.id,
        created=sent.created,
        message=MessageResponse.from_message(sent.message),
    )


@router.get("", response_model=List[ChatResponse])
async def list_chats(
    identity: Identity = Depends(get_current_identity),
    chats: ChatService = Depends(get_chat_service)
):
    """
    List the caller's chats, most recently updated first.
    """
    return [
        ChatResponse.from_chat(chat, unread_count=unread_for(chat, identity.role))
        for chat in await chats.list_chats(identity)
    ]


@router.get("/admin", response_model=List[ChatResponse])
async def list_admin_chats(
    open: Optional[bool] = Query(None, description="Only open (true) or closed (false) chats"),
    identity: Identity = Depends(require_admin),
    chats: ChatService = Depends(get_chat_service)
):
    """
    List every chat for support staff, most recently updated first.
    """
    return [
        ChatResponse.from_chat(chat, unread_count=unread_for(chat, identity.role))
        for chat in await chats.list_admin_chats(identity, open=open)
    ]


@router.post("", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
async def create_chat(
    subject: str = Form(...),
    message: str = Form(""),
    attachments: Optional[List[UploadFile]] = File(None),
    identity: Identity = Depends(get_current_identity),
    chats: ChatService = Depends(get_chat_service)
):
    """
    Start a general (not order-linked) chat with its first message.
    """
    uploads = await read_uploads(attachments)
    sent = await chats.start_general_chat(identity, subject, message, uploads)
    return sent_response(sent)


@router.get("/poll", response_model=PollResponse)
async def poll_updates(
    since: datetime = Query(..., description="Get updates since this timestamp"),
    identity: Identity = Depends(get_current_identity),
    chats: ChatService = Depends(get_chat_service)
):
    """
    Poll for chats updated since a timestamp. Staff see every chat.
    """
    if since.tzinfo is not None:
        since = since.astimezone(timezone.utc).replace(tzinfo=None)

    customer_id = None if identity.is_admin else identity.id
    chat_ids = await chats.store.chats_updated_since(since, customer_id=customer_id)
    return PollResponse(has_updates=bool(chat_ids), count=len(chat_ids), chat_ids=chat_ids)


@router.get("/unread", response_model=UnreadSummaryResponse)
async def get_unread_count(
    identity: Identity = Depends(get_current_identity),
    chats: ChatService = Depends(get_chat_service)
):
    """
    Get unread message totals for the caller's side of their chats.
    """
    summary = await chats.store.unread_summary(identity)
    return UnreadSummaryResponse(**summary)


@router.post("/orders/{order_id}", response_model=ChatResponse, status_code=status.HTTP_201_CREATED)
async def start_order_chat(
    order_id: str,
    content: Optional[str] = Form(None),
    attachments: Optional[List[UploadFile]] = File(None),
    identity: Identity = Depends(get_current_identity),
    chats: ChatService = Depends(get_chat_service)
):
    """
    Open the chat of an order, optionally with a first message. Idempotent.
    """
    uploads = await read_uploads(attachments)
    chat = await chats.start_order_chat(identity, order_id, content, uploads)
    return ChatResponse.from_chat(chat)


@router.get("/orders/{order_id}", response_model=ChatWithMessagesResponse)
async def get_order_chat(
    order_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=200),
    identity: Identity = Depends(get_current_identity),
    chats: ChatService = Depends(get_chat_service)
):
    """
    Get the chat of an order with a page of messages.
    """
    window = await chats.get_order_chat(identity, order_id, page=page, limit=limit)
    return ChatWithMessagesResponse.from_page(window)


@router.get("/{chat_id}", response_model=ChatWithMessagesResponse)
async def get_chat(
    chat_id: str,
    page: int = Query(1, ge=1, description="1 = newest messages"),
    limit: int = Query(settings.default_page_size, ge=1, le=200),
    identity: Identity = Depends(get_current_identity),
    chats: ChatService = Depends(get_chat_service)
):
    """
    Get chat with a page of messages, counting back from the newest.
    """
    window = await chats.get_chat(identity, chat_id, page=page, limit=limit)
    return ChatWithMessagesResponse.from_page(window)


@router.post("/{chat_id}/messages", response_model=SendMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    chat_id: str,
    content: str = Form(""),
    attachments: Optional[List[UploadFile]] = File(None),
    identity: Identity = Depends(get_current_identity),
    chats: ChatService = Depends(get_chat_service)
):
    """
    Post a message with up to three attachments.
    """
    uploads = await read_uploads(attachments)
    sent = await chats.send_message(identity, content, uploads, chat_id=chat_id)
    return sent_response(sent)


@router.post("/{chat_id}/read", response_model=MarkReadResponse)
async def mark_read(
    chat_id: str,
    identity: Identity = Depends(get_current_identity),
    chats: ChatService = Depends(get_chat_service)
):
    """
    Mark the other party's messages as read.
    """
    count = await chats.mark_read(identity, chat_id)
    return MarkReadResponse(chat_id=chat_id, count=count)


@router.get("/{chat_id}/messages/{message_id}/attachments/{index}")
async def get_attachment(
    chat_id: str,
    message_id: str,
    index: int,
    identity: Identity = Depends(get_current_identity),
    chats: ChatService = Depends(get_chat_service)
):
    """
    Download one attachment of a message.
    """
    ref, data = await chats.get_attachment(identity, chat_id, message_id, index)
    return Response(
        content=data,
        media_type=ref.content_type,
        headers={"Content-Disposition": f'inline; filename="{ref.filename}"'},
    )


@router.patch("/{chat_id}/close", response_model=ChatResponse)
async def close_chat(
    chat_id: str,
    identity: Identity = Depends(require_admin),
    chats: ChatService = Depends(get_chat_service)
):
    """
    Close an order chat. A later customer message reopens it.
    """
    chat = await chats.set_open(identity, chat_id, False)
    return ChatResponse.from_chat(chat)


@router.patch("/{chat_id}/reopen", response_model=ChatResponse)
async def reopen_chat(
    chat_id: str,
    identity: Identity = Depends(require_admin),
    chats: ChatService = Depends(get_chat_service)
):
    """
    Reopen a closed order chat.
    """
    chat = await chats.set_open(identity, chat_id, True)
    return ChatResponse.from_chat(chat)
