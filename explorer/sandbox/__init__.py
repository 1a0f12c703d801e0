"""Sandbox module: one Docker container per exploration worktree."""

from explorer.sandbox.containers import ContainerManager, ContainerSpec, SandboxConfig

__all__ = ["ContainerManager", "ContainerSpec", "SandboxConfig"]
