"""Kiln sandbox — restricted evaluation of stored functions."""

from .executor import SandboxExecutor
from .guards import ExternalApis

__all__ = ["ExternalApis", "SandboxExecutor"]
