"""converge — idempotent desired-state reconciler for a Jenkins server."""

__version__ = "0.1.0"
