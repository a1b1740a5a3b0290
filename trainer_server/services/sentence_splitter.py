import re
from typing import List

_SENTENCE_END = re.compile(r'(?<=[.!?])\s+')


def split_on_sentences(text: str) -> List[str]:
    """Split text into sentences on terminal punctuation followed by whitespace."""
    return [s.strip() for s in _SENTENCE_END.split(text or "") if s.strip()]


def group_for_speech(text: str, max_chars: int = 180) -> List[str]:
    """
    Sentences merged into synthesis-sized groups.

    Short sentences ("Fine." "Whatever.") are joined with their neighbours so
    each synthesis call has enough text to sound natural, while no group grows
    past ``max_chars`` unless a single sentence already does.
    """
    groups: List[str] = []
    current = ""
    for sentence in split_on_sentences(text):
        if not current:
            current = sentence
        elif len(current) + 1 + len(sentence) <= max_chars:
            current = f"{current} {sentence}"
        else:
            groups.append(current)
            current = sentence
    if current:
        groups.append(current)
    return groups
