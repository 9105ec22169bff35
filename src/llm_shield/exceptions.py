"""Exception hierarchy for LLM Shield."""


class ShieldError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(ShieldError, ValueError):
    """Raised when an engine component receives a nonsensical argument."""


class SemanticServiceError(ShieldError):
    """Raised when the external semantic-signal service cannot be used.

    Covers transport errors, non-2xx responses, timeouts and malformed
    payloads. The risk analyzer catches this and degrades gracefully.
    """
