from typing import NoReturn

from fastapi import HTTPException

from timeswap.errors import (
    ExchangeConflictError,
    ExchangeError,
    ExchangeForbiddenError,
    ExchangeNotFoundError,
    ExchangeStateConflictError,
)


def raise_http_error(exc: ExchangeError) -> NoReturn:
    if isinstance(exc, ExchangeNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ExchangeForbiddenError):
        raise HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ExchangeConflictError):
        detail = {"message": str(exc), "conflicting_ids": list(exc.conflicting_ids)}
        raise HTTPException(status_code=409, detail=detail)
    if isinstance(exc, ExchangeStateConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    raise HTTPException(status_code=400, detail=str(exc))
