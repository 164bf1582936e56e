"""Read-through disk cache in front of a status-code image origin."""

__version__ = "0.1.0"
