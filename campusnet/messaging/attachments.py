import logging

from campusnet.core.errors import ValidationError
from campusnet.utils.env_helper import env_int

logger = logging.getLogger(__name__)

MAX_ATTACHMENT_BYTES = env_int("MAX_ATTACHMENT_BYTES", 10 * 1024 * 1024)


def upload_attachment(blob_store, actor_id: str, filename: str, content_type: str, data: bytes) -> dict:
    """
    Store an attachment for a message that is about to be posted.

    Returns the reference (url, storage path, filename, mime type, size) the
    client passes back in the message's ``attachments`` list.
    """
    filename = (filename or "").strip().replace(" ", "-")
    if not filename:
        raise ValidationError("Please provide a filename.")
    if not data:
        raise ValidationError("The uploaded file is empty.")
    if len(data) > MAX_ATTACHMENT_BYTES:
        raise ValidationError(f"Attachments must be at most {MAX_ATTACHMENT_BYTES} bytes.")

    reference = blob_store.upload(
        actor_id, filename, data, content_type or "application/octet-stream"
    )
    logger.info(f"attachment_stored owner={actor_id} path={reference['path']}")
    return reference
