"""Command-line tools for operating the caching proxy."""
