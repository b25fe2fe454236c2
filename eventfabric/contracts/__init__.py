"""Contracts package.

This package defines *public* cross-service contracts: topic names, consumer
groups, envelope wire fields and payload semantics per schema version. Services
may only share types via `eventfabric.core` and `eventfabric.contracts`.
"""
