"""Command-line entry point and report rendering."""
