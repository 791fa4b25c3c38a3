"""Secret Squirrel: find potential secrets in a repository's worktree, index or history."""

__version__ = "0.3.0"
