"""Jarvis: a messaging relay to a chat completion service with per-user memory."""

__version__ = "0.1.0"
