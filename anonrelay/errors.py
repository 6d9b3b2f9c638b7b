"""
Exception types raised by the relay core.

Only persistence conflicts are meant to reach callers; channel errors are
caught and counted inside the batch flows.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for relay errors."""


class ConflictError(RelayError):
    """
    A write transaction lost a race (e.g. two first contacts competing for
    the same pseudonym). The caller should retry with a fresh lookup.
    """


class ChannelError(RelayError):
    """A send through the transport failed for a single recipient."""

    def __init__(self, message: str, chat_ref: Optional[str] = None):
        super().__init__(message)
        self.chat_ref = chat_ref
