"""Command-line interface for devpreview."""
