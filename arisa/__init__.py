"""Arisa — resilient gateway between a chat channel and an AI-agent worker."""

__version__ = "0.4.0"
