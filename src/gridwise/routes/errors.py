from fastapi import HTTPException

from gridwise.exceptions import (
    EnrichmentError, ConfigNotFoundError, ColumnNotFoundError, RowNotFoundError,
    JobNotFoundError, InvalidRequestError, ProviderNotConfiguredError,
)

_STATUS_CODES = {
    ConfigNotFoundError: 404,
    ColumnNotFoundError: 404,
    RowNotFoundError: 404,
    JobNotFoundError: 404,
    InvalidRequestError: 400,
    ProviderNotConfiguredError: 503,
}


def http_error(e: EnrichmentError) -> HTTPException:
    """Translate an engine error into the HTTPException a route should raise."""
    return HTTPException(status_code=_STATUS_CODES.get(type(e), 500), detail=str(e))
