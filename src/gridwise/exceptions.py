"""
Domain errors raised by the enrichment engine.
Routes translate these into HTTP responses; per-row model failures are
never raised; they are written into cell state instead.
"""


class EnrichmentError(Exception):
    """Base class for engine errors that abort a whole request."""


class ConfigNotFoundError(EnrichmentError):
    pass


class ColumnNotFoundError(EnrichmentError):
    pass


class RowNotFoundError(EnrichmentError):
    pass


class JobNotFoundError(EnrichmentError):
    pass


class InvalidRequestError(EnrichmentError):
    pass


class ProviderNotConfiguredError(EnrichmentError):
    pass


class ModelTimeoutError(EnrichmentError):
    """A single model call exceeded its timeout. Caught per row and recorded on the cell."""
