from fastapi import APIRouter, Depends, File, UploadFile
from typing import List
from pharmalink.errors import ValidationError
from pharmalink.routes.chats import participant_chat
from pharmalink.services.blob_store import BlobStore, chat_image_path, extension_for, prescription_path
from pharmalink.utils.auth import get_current_user, require_customer

router = APIRouter()

MAX_PRESCRIPTION_IMAGES = 5


@router.post("/prescriptions", status_code=201)
async def upload_prescription(
    files: List[UploadFile] = File(...),
    current_user: dict = Depends(require_customer),
):
    """Store prescription photos; the returned URLs go into a new request."""
    if len(files) > MAX_PRESCRIPTION_IMAGES:
        raise ValidationError(f"At most {MAX_PRESCRIPTION_IMAGES} images per prescription")

    store = BlobStore()
    urls = []
    for index, upload in enumerate(files):
        extension = extension_for(upload.content_type, upload.filename)
        data = await upload.read()
        urls.append(await store.upload(prescription_path(current_user["_id"], index, extension), data, current_user["_id"]))
    return {"urls": urls}


@router.post("/chats/{chat_id}", status_code=201)
async def upload_chat_image(
    chat_id: str,
    file: UploadFile = File(...),
    current_user: dict = Depends(get_current_user),
):
    await participant_chat(chat_id, current_user)
    extension = extension_for(file.content_type, file.filename)
    data = await file.read()
    url = await BlobStore().upload(chat_image_path(chat_id, extension), data, current_user["_id"])
    return {"url": url}
