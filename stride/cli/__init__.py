"""Command-line tools for operating the Stride notification service."""
