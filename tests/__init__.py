"""
Event Planner sync SDK test suite.

This package contains:
- unit/: Unit tests (models, validation, access filter, cache, saga, backend)
- integration/: Store, sharing, groups and services against the in-memory backend
"""
