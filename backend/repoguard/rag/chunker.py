"""Token-window chunking for the indexing pipeline.

Splits raw file text into bounded, overlapping segments suitable for
embedding.  Tokens are whitespace-delimited words; each token keeps its
trailing whitespace so that joining a run of tokens reproduces the exact
source text.  Splits therefore only ever fall on word boundaries.

The splitter is a pure function of ``(text, settings)``: every caller
passes its own ``ChunkingSettings`` value.
"""
import logging
import re
from typing import List

from repoguard.config import ChunkingSettings

logger = logging.getLogger(__name__)

# Leading whitespace (start of text only) + word + trailing whitespace.
_TOKEN_RE = re.compile(r"\s*\S+\s*")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def tokenize(text: str) -> List[str]:
    """Split *text* into word tokens.  ``"".join(tokenize(t)) == t`` for non-blank *t*."""
    return _TOKEN_RE.findall(text)


def count_tokens(text: str) -> int:
    return len(tokenize(text))


def split_text(text: str, settings: ChunkingSettings) -> List[str]:
    """Split *text* into ordered segments according to *settings*.

    Args:
        text:     Raw file (or cleaned diff) content.
        settings: Window size, overlap, minimum segment size, segment cap
                  and overflow policy.

    Returns:
        ``[]`` for blank input, ``[text]`` when the text fits in one
        window, otherwise the overlapping windows.  Consecutive windows
        share exactly ``settings.overlap_tokens`` tokens.
    """
    if not text or not text.strip():
        return []

    tokens = tokenize(text)
    if len(tokens) <= settings.max_tokens:
        return [text]

    step = settings.max_tokens - settings.overlap_tokens
    starts: List[int] = []
    start = 0
    while True:
        starts.append(start)
        if start + settings.max_tokens >= len(tokens):
            break
        start += step

    overflow = len(starts) > settings.max_segments
    if overflow:
        logger.warning(
            "[Chunker] %d windows exceed max_segments=%d (policy=%s)",
            len(starts), settings.max_segments, settings.overflow_policy,
        )
        starts = starts[: settings.max_segments]

    segments: List[str] = []
    for i, seg_start in enumerate(starts):
        is_last = i == len(starts) - 1
        if is_last and overflow and settings.overflow_policy == "merge":
            seg_end = len(tokens)
        else:
            seg_end = min(seg_start + settings.max_tokens, len(tokens))
        segments.append("".join(tokens[seg_start:seg_end]))

    # A short trailing window only repeats overlap plus a few words.
    if len(segments) > 1 and len(segments[-1].strip()) < settings.min_segment_chars:
        segments.pop()

    return segments


def label_parts(file_path: str, count: int) -> List[str]:
    """Return display paths for *count* segments of *file_path*.

    A single segment keeps the bare path; multiple segments are labelled
    ``"<path> (Part k/n)"``.
    """
    if count <= 1:
        return [file_path] * count
    return [f"{file_path} (Part {k}/{count})" for k in range(1, count + 1)]
