"""Helpers for unified-diff text and file-type checks."""
import re
from typing import Iterable, List

from repoguard.git_workspace.schemas import FileDiff

_LINE_MARKER_RE = re.compile(r"(?m)^[+\-]")
_HUNK_HEADER_RE = re.compile(r"(?m)^@@.*@@")


def clean_diff(diff: str) -> str:
    """Strip added/removed line markers and hunk headers from *diff*.

    What remains reads as source text (old and new lines interleaved), which
    is what the index was built from.
    """
    text = _LINE_MARKER_RE.sub("", diff)
    text = _HUNK_HEADER_RE.sub("", text)
    return text.strip()


def is_binary_path(path: str, extensions: Iterable[str]) -> bool:
    lowered = path.lower()
    return any(lowered.endswith(ext.lower()) for ext in extensions)


def format_diffs(diffs: List[FileDiff]) -> str:
    """Render diffs as ``File: <path>`` blocks for a reviewer prompt."""
    blocks = [f"File: {d.path}\n{d.diff}" for d in diffs if d.diff and d.diff.strip()]
    return "\n\n".join(blocks)
