from fastapi import HTTPException

from cleanmatch.services.errors import (
    StoreConflictError,
    StoreError,
    StoreNotFoundError,
    StorePermissionError,
)


def raise_store_http_error(exc: StoreError) -> None:
    detail = {"code": exc.code, "message": str(exc)}
    if isinstance(exc, StoreNotFoundError):
        raise HTTPException(status_code=404, detail=detail)
    if isinstance(exc, StorePermissionError):
        raise HTTPException(status_code=403, detail=detail)
    if isinstance(exc, StoreConflictError):
        raise HTTPException(status_code=409, detail=detail)
    raise HTTPException(status_code=400, detail=detail)
