"""Command-line interface for the dispatch migration engine."""
