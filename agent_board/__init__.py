"""agent-board: drive GitHub issues across a project board with coding-agent sessions."""

__version__ = "0.1.0"
