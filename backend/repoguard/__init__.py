"""RepoGuard indexing and retrieval pipeline.

Keeps a semantic index of a hosted git repository in sync with the
repository and assembles review context from it.
"""
