"""Error taxonomy shared by the analytics and alerting modules."""


class FinanceEngineError(Exception):
    """Base class for errors raised by the alerting engine."""


class ConfigurationError(FinanceEngineError):
    """A record or setting is configured in a way the engine cannot use.

    Surfaced to the caller and never retried.
    """


class DataUnavailableError(FinanceEngineError):
    """The backing store could not be read from or written to."""


class ValidationError(FinanceEngineError):
    """A stored record has a malformed shape; the record is skipped."""


class AuthorizationError(FinanceEngineError):
    """The caller presented a missing or wrong job secret."""
