"""Bounded contexts.

Each context is split into:
- application: types, pure rules and use-cases (no direct IO)
- infrastructure: database and external-service adapters
"""
