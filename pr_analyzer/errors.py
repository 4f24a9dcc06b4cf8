"""Error types for the pull request analyzer."""

from __future__ import annotations

from typing import Optional


class PRAnalyzerError(Exception):
    """Base class for analyzer errors."""


class ConfigurationError(PRAnalyzerError, ValueError):
    """Bad or missing run settings. Fatal, raised before any stage runs."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class BackendError(PRAnalyzerError, RuntimeError):
    """A text-generation backend call failed."""

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class StaticAnalysisError(PRAnalyzerError, RuntimeError):
    """The external scanner could not produce a usable result."""
