"""
In-memory index layer: Span Store, Embedding Cache, Vector Index,
Ingestion Pipeline and Query Engine, plus the on-disk snapshot and the
file watcher that feed them.
"""
