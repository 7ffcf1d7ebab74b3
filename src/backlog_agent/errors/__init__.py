"""Error translation for task failure comments."""

from .translator import FailureTranslator, FriendlyFailure

__all__ = ["FailureTranslator", "FriendlyFailure"]
