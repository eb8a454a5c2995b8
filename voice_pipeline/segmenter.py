"""Split reply text into speakable segments, roughly one sentence each."""
import re
from typing import List

from .models import Segment

# A run of text followed by its terminators, or a stray run of terminators
_SEGMENT_RE = re.compile(r"[^.!?\n]+[.!?\n]*|[.!?\n]+")


def segment(text: str) -> List[Segment]:
    """
    Split on '.', '!', '?' and newlines, keeping each delimiter with the text
    before it. Pieces are trimmed and empty ones dropped, so blank input
    yields no segments.
    """
    if not text or not text.strip():
        return []
    pieces = (match.group(0).strip() for match in _SEGMENT_RE.finditer(text))
    return [Segment(index=i, text=piece) for i, piece in enumerate(p for p in pieces if p)]
