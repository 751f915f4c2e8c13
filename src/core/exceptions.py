"""Typed exception hierarchy for the signal decision engine.

Lets the operator surfaces map failures onto distinct outcomes
(not found, rejected, failed) and lets batch loops decide whether a
failure drops one item or stops the process.
"""


class EngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(EngineError):
    """Invalid or unparseable configuration. Fatal at startup."""


class RecordNotFoundError(EngineError):
    """Requested analysis record or signal does not exist."""


class InvariantViolationError(EngineError):
    """Operation would break a data-model invariant and was rejected."""


class InvalidOracleResultError(EngineError):
    """Analysis oracle returned a malformed or unusable payload."""


class OracleUnavailableError(EngineError):
    """Analysis oracle could not be reached or timed out."""
