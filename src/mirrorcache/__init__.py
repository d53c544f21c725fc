"""Read-through caching proxy backed by an object store and an edge cache."""

__version__ = "0.3.0"
