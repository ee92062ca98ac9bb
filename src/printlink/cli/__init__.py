"""Command-line interface for printlink (``printlink`` console script)."""
