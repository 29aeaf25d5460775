"""Core worker: the restartable process that answers messages with an agent CLI."""
