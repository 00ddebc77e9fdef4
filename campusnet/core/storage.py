import os
import uuid
import logging
from typing import Iterable, Optional

from dotenv import load_dotenv

from campusnet.core.supabase_client import get_supabase

load_dotenv()
logger = logging.getLogger(__name__)

ATTACHMENTS_BUCKET = os.getenv("ATTACHMENTS_BUCKET", "attachments")


class SupabaseBlobStore:
    """Message attachments kept in a Supabase Storage bucket."""

    def __init__(self, bucket: str = ATTACHMENTS_BUCKET, client=None):
        self.bucket = bucket
        self._client = client

    @property
    def storage(self):
        if self._client is None:
            self._client = get_supabase()
        return self._client.storage.from_(self.bucket)

    def upload(self, owner_id: str, filename: str, content: bytes, content_type: str) -> dict:
        path = f"{owner_id}/{uuid.uuid4()}-{os.path.basename(filename)}"
        self.storage.upload(
            path=path, file=content, file_options={"content-type": content_type}
        )
        url = self.storage.get_public_url(path)

        logger.info(f"attachment_uploaded path={path} size={len(content)}")
        return {
            "url": url,
            "path": path,
            "filename": filename,
            "mime_type": content_type,
            "size": len(content),
        }

    def delete(self, paths: Iterable[str]):
        paths = [p for p in paths if p]
        if not paths:
            return
        self.storage.remove(paths)
        logger.info(f"attachments_deleted count={len(paths)}")


_store: Optional[SupabaseBlobStore] = None


def get_blob_store() -> SupabaseBlobStore:
    global _store
    if _store is None:
        _store = SupabaseBlobStore()
    return _store


def attachment_paths(attachments) -> list:
    return [a.get("path") for a in attachments or [] if a.get("path")]


def discard_attachments(blob_store, paths: Iterable[str]):
    """Best effort cleanup once the owning records are gone for good."""
    paths = list(paths)
    if not paths:
        return
    try:
        blob_store.delete(paths)
    except Exception:
        logger.exception(f"attachment_cleanup_failed count={len(paths)}")
