"""
Feature modules live under this package.

Each module owns its models, service functions and JSON routes, and reuses the
platform primitives (auth, RBAC, scoping, audit, storage, DB session).
"""
