"""Shared utilities."""

from avatar_morphology.utils.concurrency import CancellationToken, checkpoint

__all__ = ["CancellationToken", "checkpoint"]
