"""Daemon utilities for a chat-bot agent: container control, memory repair, supervision, restart and identity."""

__version__ = "0.1.0"