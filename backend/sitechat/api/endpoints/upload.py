from typing import Optional

from fastapi import APIRouter, Depends, File, Request, UploadFile

from sitechat.schemas.chat import UploadResponse
from sitechat.services.auth import Identity, get_current_identity

router = APIRouter()


@router.post("/upload", response_model=UploadResponse)
async def upload_image(
    request: Request,
    image: Optional[UploadFile] = File(None),
    identity: Identity = Depends(get_current_identity),
):
    """Store an image (multipart field `image`, image/* only, size-capped)."""
    image_url = await request.app.state.assets.save_upload(image)
    return UploadResponse(image_url=image_url)
