"""Keep an AI coding-assistant session working through a task queue across usage limits."""

__version__ = "0.4.0"
