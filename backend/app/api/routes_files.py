import logging
import mimetypes

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from app.dependencies import get_storage
from app.infra.storage import ObjectNotFoundError, StorageBackend

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/v1/files/{key:path}", include_in_schema=False)
async def serve_signed_file(
    key: str,
    exp: int = Query(...),
    sig: str = Query(...),
    storage: StorageBackend = Depends(get_storage),
) -> Response:
    if not storage.supports_direct_io():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    if not storage.validate_signature(key=key, expires_at=exp, signature=sig):
        logger.info("signed_file_denied", extra={"extra": {"reason": "invalid_or_expired"}})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired link")
    try:
        data = await storage.read(key=key)
    except ObjectNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File missing") from exc

    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    filename = key.rsplit("/", 1)[-1]
    return Response(
        content=data,
        media_type=media_type,
        headers={
            "Cache-Control": "no-store",
            "Content-Disposition": f'inline; filename="{filename}"',
        },
    )
