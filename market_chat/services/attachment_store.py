"""Attachment admission and byte storage for chat messages"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Sequence, Tuple

from bson import Binary
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from market_chat.config import settings
from market_chat.core.exceptions import InvalidArgument, Internal, NotFound
from market_chat.models.chat import AttachmentRef
from market_chat.utils.validators import to_object_id

logger = logging.getLogger(__name__)


@dataclass
class AttachmentUpload:
    """File submitted with a message, not yet admitted"""
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def validate_uploads(
    uploads: Sequence[AttachmentUpload],
    max_count: int = None,
    max_bytes: int = None,
) -> None:
    """
    Check count and size limits for a whole batch before anything is stored.

    Raises:
        InvalidArgument: too many files, an empty file or an oversized file
    """
    max_count = max_count if max_count is not None else settings.attachment_max_count
    max_bytes = max_bytes if max_bytes is not None else settings.attachment_max_bytes

    if len(uploads) > max_count:
        raise InvalidArgument(f"At most {max_count} attachments are allowed per message")

    for upload in uploads:
        if not upload.filename:
            raise InvalidArgument("Attachment filename is required")
        if upload.size == 0:
            raise InvalidArgument(f"Attachment '{upload.filename}' is empty")
        if upload.size > max_bytes:
            raise InvalidArgument(
                f"Attachment '{upload.filename}' exceeds the {max_bytes // (1024 * 1024)} MB limit"
            )


class AttachmentStore:
    """Keeps attachment bytes in the ``chat_attachments`` collection"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.chat_attachments

    async def save(self, upload: AttachmentUpload, owner_id: str) -> AttachmentRef:
        doc = {
            "filename": upload.filename,
            "content_type": upload.content_type or "application/octet-stream",
            "size": upload.size,
            "data": Binary(upload.data),
            "owner_id": owner_id,
            "created_at": datetime.utcnow(),
        }
        result = await self.collection.insert_one(doc)
        return AttachmentRef(
            filename=doc["filename"],
            content_type=doc["content_type"],
            size=doc["size"],
            handle=str(result.inserted_id),
        )

    async def load(self, handle: str) -> Tuple[AttachmentRef, bytes]:
        object_id = to_object_id(handle)
        doc = await self.collection.find_one({"_id": object_id}) if object_id else None
        if not doc:
            raise NotFound("Attachment not found")
        ref = AttachmentRef(
            filename=doc["filename"],
            content_type=doc["content_type"],
            size=doc["size"],
            handle=handle,
        )
        return ref, bytes(doc["data"])

    async def delete(self, handles: Sequence[str]) -> None:
        ids = [oid for oid in (to_object_id(h) for h in handles) if oid is not None]
        if ids:
            await self.collection.delete_many({"_id": {"$in": ids}})

    async def admit(self, uploads: Sequence[AttachmentUpload], owner_id: str) -> List[AttachmentRef]:
        """
        Validate and store a batch of uploads, all or nothing.

        If any write fails, the files already written are removed and the
        batch fails with ``Internal``.
        """
        validate_uploads(uploads)

        refs: List[AttachmentRef] = []
        try:
            for upload in uploads:
                refs.append(await self.save(upload, owner_id))
        except PyMongoError as e:
            logger.error(f"Storing attachments failed, rolling back {len(refs)} file(s): {e}")
            await self.discard(refs)
            raise Internal("Failed to store attachments") from e
        return refs

    async def discard(self, refs: Sequence[AttachmentRef]) -> None:
        """Best-effort removal of already stored attachments."""
        if not refs:
            return
        try:
            await self.delete([ref.handle for ref in refs])
        except PyMongoError as e:
            logger.warning(f"Could not remove orphaned attachments: {e}")
