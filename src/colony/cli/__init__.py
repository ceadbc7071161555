"""Command line interface for colony."""
