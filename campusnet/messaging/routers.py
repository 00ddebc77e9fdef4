from fastapi import APIRouter, Depends, Query, Request

from campusnet.core.dependencies import get_current_user_id
from campusnet.core.storage import get_blob_store

from .attachments import upload_attachment
from .schemas import AttachmentData


router = APIRouter()


@router.post("", response_model=AttachmentData, status_code=201)
async def upload(
    request: Request,
    filename: str = Query(...),
    current_user_id: str = Depends(get_current_user_id),
    blob_store=Depends(get_blob_store),
):
    """
    Upload a message attachment.

    The request body is the raw file; its `Content-Type` header is stored as
    the mime type.

    **Returns**
    - The attachment reference to include in a message's `attachments`

    **Errors**
    - `400`: Empty body, missing filename or file too large
    """
    data = await request.body()
    return upload_attachment(
        blob_store,
        current_user_id,
        filename,
        request.headers.get("content-type"),
        data,
    )
