"""Counter store adapters.

The rate limiter depends only on the abstract contract in ``base`` so the
shared store (Redis in production, in-memory for development and tests) can be
swapped without touching the limiter.
"""
