"""Command-line interface for labguard."""
