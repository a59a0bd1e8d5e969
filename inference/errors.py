"""Inference-side error types."""

from __future__ import annotations


class BackendError(RuntimeError):
    """A single inference call failed; the frame yields no detections."""


class AssetUnavailableError(BackendError):
    """The local model could not be loaded. Cached until the backend is reset."""
