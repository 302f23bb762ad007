"""trak: task coordination for agents sharing a codebase."""

__version__ = "0.1.0"
