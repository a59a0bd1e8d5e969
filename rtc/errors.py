"""Connection-layer error types. These are surfaced to the caller."""

from __future__ import annotations


class SignalingError(RuntimeError):
    """A descriptor was malformed or applied out of order. Link state is unchanged."""


class MediaAccessError(RuntimeError):
    """The local camera could not be opened."""
