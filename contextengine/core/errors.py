from __future__ import annotations


class ContextEngineError(Exception):
    """Base error for the context engine."""


class ContextValidationError(ContextEngineError, ValueError):
    """Caller supplied malformed input (reference batch, correction, section list)."""


class ContextPersistenceError(ContextEngineError):
    """Context store write failed; data correctness cannot be guaranteed."""


class ProviderConfigError(ContextEngineError):
    """Missing or invalid provider configuration."""


class CompressionError(ContextEngineError):
    """Compression provider request failure."""


class CompressionTimeoutError(CompressionError):
    """Compression provider did not answer in time."""
