import asyncio
import uuid

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File, status
import structlog

from backoffice.config import settings
from backoffice.middleware.auth import get_current_user
from backoffice.routes.liquidations import get_liquidation_service
from backoffice.schemas.liquidation import ReceiptUploadResponse, ReceiptUrlResponse
from backoffice.services.liquidation_service import LiquidationService, new_receipt_key
from backoffice.services.storage import ReceiptStorage, get_storage

logger = structlog.get_logger()
router = APIRouter()

ALLOWED_CONTENT_TYPES = {
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/heic",
}


@router.post(
    "/upload", response_model=ReceiptUploadResponse, status_code=status.HTTP_201_CREATED
)
async def upload_receipt(
    file: UploadFile = File(...),
    current_user: dict = Depends(get_current_user),
    storage: ReceiptStorage = Depends(get_storage),
):
    """Store a receipt file. The returned key is recorded by filing or editing a liquidation."""
    if file.content_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": {
                    "code": "UNSUPPORTED_FILE_TYPE",
                    "message": f"Unsupported file type: {file.content_type}",
                }
            },
        )

    file_bytes = await file.read()
    if len(file_bytes) > settings.RECEIPT_MAX_FILE_SIZE:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail={
                "error": {
                    "code": "FILE_TOO_LARGE",
                    "message": (
                        f"File too large. Max size: "
                        f"{settings.RECEIPT_MAX_FILE_SIZE // (1024 * 1024)} MB"
                    ),
                }
            },
        )

    key = new_receipt_key(current_user["user_id"], file.filename)
    try:
        await asyncio.to_thread(storage.put_object, file_bytes, key, file.content_type)
    except Exception as e:
        logger.error("receipt_upload_failed", key=key, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "error": {
                    "code": "STORAGE_UNAVAILABLE",
                    "message": "Failed to upload file to storage",
                }
            },
        )

    return ReceiptUploadResponse(
        file_key=key,
        file_name=file.filename or key.rsplit("/", 1)[-1],
        file_type=file.content_type,
        file_size=len(file_bytes),
    )


@router.get("/{attachment_id}/url", response_model=ReceiptUrlResponse)
async def get_receipt_url(
    attachment_id: uuid.UUID,
    current_user: dict = Depends(get_current_user),
    service: LiquidationService = Depends(get_liquidation_service),
):
    result = await service.get_receipt_url(current_user["user_id"], attachment_id)
    return ReceiptUrlResponse(
        attachment_id=str(result.attachment.id),
        file_name=result.attachment.file_name,
        url=result.url,
        expires_in=result.expires_in,
    )
