"""Exception types raised by the NeuroPath core."""


class NeuroPathError(Exception):
    """Base class for all NeuroPath errors."""

    code = "NEUROPATH_ERROR"


class GenerationError(NeuroPathError):
    """The content generator failed or returned malformed data."""

    code = "GENERATION_ERROR"


class ContractViolation(NeuroPathError):
    """A caller broke an engine precondition, e.g. selected a card that was not offered."""

    code = "CONTRACT_VIOLATION"


class SessionStateError(NeuroPathError):
    """An operation was invoked in a phase that does not allow it."""

    code = "SESSION_STATE_ERROR"
