"""Exceptions raised by the bulk streamer."""


class StreamerError(Exception):
    """Base class for domain errors."""


class ConfigurationError(StreamerError):
    """A job or request is missing a component it needs (credentials, page, content, profile)."""


class JobConflictError(StreamerError):
    """The requested transition is not allowed while the job is supervised."""


class NotFoundError(StreamerError):
    """A keyed record does not exist."""
