"""Grove MCP: one Claude agent session per git worktree."""

__version__ = "0.1.0"
