"""Review-context assembly from the repository index."""
from .assembler import (
    NO_CONTEXT_MESSAGE,
    RETRIEVAL_FAILED_MESSAGE,
    ContextAssembler,
)
from .diffs import clean_diff, format_diffs, is_binary_path

__all__ = [
    "NO_CONTEXT_MESSAGE",
    "RETRIEVAL_FAILED_MESSAGE",
    "ContextAssembler",
    "clean_diff",
    "format_diffs",
    "is_binary_path",
]
