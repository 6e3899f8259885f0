"""Operator engine for stack-based infrastructure provisioning.

Builds a dependency graph from a stack's resource descriptors, provisions it
in topological order with idempotent upserts, and assigns access grants as
each scope resource completes.

Package name uses 'provision_opr' (short for operator) to avoid collision
with Python's stdlib 'operator' module.
"""
