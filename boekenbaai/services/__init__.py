"""Boekenbaai - Services Package

This package contains the modules for external integrations:
- HTTP client abstraction
- ISBN metadata sources (Google Books, Open Library)
- ISBN metadata cache with request coalescing
"""
