"""Index storage and chunking for repository retrieval.

Provides the FAISS-backed, repository-partitioned index store and the
token-window chunker used by ingestion, delta sync and context assembly.
"""
