"""Error taxonomy shared by the extraction adapters, storage and pipelines."""
from __future__ import annotations


class PricebookError(Exception):
    """Base class for all pipeline errors."""
    pass


class ServiceUnavailable(PricebookError):
    """Extraction capability is unreachable or unconfigured."""
    pass


class NoExtraction(PricebookError):
    """The adapter ran but produced no usable fact."""
    pass


class ValidationError(PricebookError):
    """An extracted fact breaks a core invariant (e.g. non-positive price)."""
    pass


class ConflictError(PricebookError):
    """A concurrent writer got there first (entity create or message commit)."""
    pass


class NotFoundError(PricebookError):
    """A tenant-scoped reference that must exist does not."""
    pass


class IngestionNotAllowed(PricebookError):
    """Automatic ingestion attempted while the messaging session is not connected."""
    pass


class UnknownSession(NotFoundError):
    """Webhook delivery names a messaging session nobody registered."""
    pass
