"""Caching proxy service.

Requests name an origin URL; the proxy answers from the edge cache, then the
object cache, and only on a miss (with a write credential) from the origin.
"""
