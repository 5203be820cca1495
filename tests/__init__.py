"""
Polls AppView Test Suite.

This package contains:
- unit/: Unit tests (no network, temporary SQLite files)
- integration/: Integration tests (SQLite, in-memory relay, fake repository)
"""
