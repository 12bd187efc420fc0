"""
Exceptions raised while wrapping, serializing or reconstructing closures.

Failures of the wrapped function itself are never translated into one of these:
they propagate from ``invoke`` unchanged.
"""

from typing import Optional


class ClosureError(Exception):
    """
    Base class for every failure detected by superclosure.

    Args:
        message: A high-level error message.
        source: The function-literal text being processed when the error occurred, if known.
    """

    def __init__(self, message: str, source: Optional[str] = None):
        full_message = message
        if source:
            full_message += f"\nSource: {source!r}"
        super().__init__(full_message)
        self.source = source


class InvalidInputError(ClosureError, TypeError):
    """``wrap`` was called on something that is not a plain callable function."""


class SourceUnavailableError(ClosureError):
    """The callable has no retrievable source location (e.g. a builtin)."""


class ParseError(ClosureError):
    """
    The located source window has no balanced function literal, or the literal's
    capture clause disagrees with the variables the runtime actually binds.
    """


class ReconstructionError(ClosureError):
    """A persisted form is malformed, or its literal does not rebuild into a consistent function."""
