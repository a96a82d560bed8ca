"""Error taxonomy for the reconciliation engine.

Exceptions are raised for anything the caller must react to. Parse
problems that still leave a usable result are reported as
:class:`ParseWarning` values alongside that result instead.
"""

from __future__ import annotations

from dataclasses import dataclass


class ReconError(Exception):
    """Base class for all reconciliation errors."""


class ValidationError(ReconError, ValueError):
    """Bad mapping, bad index, malformed config, or unsupported input.

    Always reported to the caller, never retried.
    """


class InvalidTransitionError(ValidationError):
    """Operation is not valid in the run's current (non-terminal) state."""


class TerminalStateError(ReconError, RuntimeError):
    """Attempt to mutate a run that is COMPLETE or FAILED."""


class UnrecoverableLoadError(ReconError, RuntimeError):
    """Source data could not be read at all (corrupt file, extraction failure)."""


class NotFoundError(ReconError, KeyError):
    """Unknown config, run, or pair id."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the message readable.
        return str(self.args[0]) if self.args else ""


@dataclass(frozen=True)
class ParseWarning:
    """Non-fatal problem found while parsing a source."""

    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class PartitionError(ReconError, RuntimeError):
    """A run's matched/unmatched sets no longer cover its rows exactly once."""
