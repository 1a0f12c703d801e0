"""Explorer - parallel exploration engine for AI coding agents.

Runs several agent attempts at the same task side by side, each in its own
git worktree and container, sharing a lock-protected collaboration volume.
"""

__version__ = "0.1.0"
