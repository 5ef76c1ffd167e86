from typing import NoReturn

from fastapi import HTTPException

from quoteflow.services.errors import (
    ConflictRetryError,
    InvalidStateError,
    NotFoundError,
    QuotationError,
    UnauthorizedError,
)


def raise_quotation_http_error(exc: QuotationError) -> NoReturn:
    detail = {"kind": exc.kind, "message": str(exc)}
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail=detail)
    if isinstance(exc, UnauthorizedError):
        raise HTTPException(status_code=403, detail=detail)
    if isinstance(exc, ConflictRetryError):
        raise HTTPException(status_code=409, detail=detail, headers={"Retry-After": "1"})
    if isinstance(exc, InvalidStateError):
        raise HTTPException(status_code=409, detail=detail)
    raise HTTPException(status_code=400, detail=detail)
