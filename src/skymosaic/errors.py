"""
Error taxonomy shared by the builder, the query evaluator and the tile
generator.

Every exception carries an ``http_status`` hint so the surrounding
transport layer can map it without knowing the engine internals:
client rejections (400/404) are never process failures.
"""


class SkyMosaicError(Exception):
    """Base class for all engine errors."""

    http_status = 500


class IngestionError(SkyMosaicError):
    """The current build cannot complete (unreadable input, bad schema)."""


class MalformedFeatureError(IngestionError):
    """A single raw feature is unusable. Recoverable: the feature is skipped."""


class QueryError(SkyMosaicError, ValueError):
    """Unparsable filter, unknown field or wrongly typed value."""

    http_status = 400


class NotFoundError(SkyMosaicError, LookupError):
    """Unresolved query hash, out-of-range sky cell or missing database."""

    http_status = 404


class InternalError(SkyMosaicError):
    """Geometry or storage failure while serving a single request."""


class EngineBusyError(SkyMosaicError):
    """The bounded work queue is full."""

    http_status = 503


class EngineTimeoutError(InternalError):
    """A query or tile computation exceeded its time budget."""

    http_status = 504
