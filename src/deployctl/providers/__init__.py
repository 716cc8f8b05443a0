"""Provider interfaces for deployctl."""
from __future__ import annotations

from .compose import ComposeError, ComposeRuntime
from .git import GitError, GitProvider
from .runtime import ContainerRuntime

__all__ = [
    "ComposeError",
    "ComposeRuntime",
    "ContainerRuntime",
    "GitError",
    "GitProvider",
]
