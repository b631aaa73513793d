from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from storage.errors import StorageError, to_http_error


def http_exception_from(err: BaseException) -> HTTPException:
    """
    Convert any storage-layer error to an HTTPException using the fixed
    status table (404/409/400/500).
    """
    status, msg, detail = to_http_error(err)
    return HTTPException(status_code=status, detail={"error": msg, "detail": detail})


async def _storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    status, msg, detail = to_http_error(exc)
    return JSONResponse(status_code=status, content={"error": msg, "detail": detail})


def install_storage_error_handler(app: FastAPI) -> FastAPI:
    """Routers can let StorageError propagate; the app renders it with the status table."""
    app.add_exception_handler(StorageError, _storage_error_handler)
    return app
