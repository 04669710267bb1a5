"""
Name normalization and similarity for sanctions screening.

Token-sorted SequenceMatcher ratio: word order and honorifics do not
affect the score, so "KHAN, Imran Ahmed" and "Mr Imran Ahmed Khan" match.
"""
import re
import unicodedata
from difflib import SequenceMatcher

HONORIFICS = {"MR", "MRS", "MS", "MISS", "DR", "SHRI", "SMT", "KUMARI", "SRI", "PROF", "LATE"}


def normalize_name(name: str) -> str:
    """Uppercase, strip accents and punctuation, drop honorifics, sort tokens."""
    if not name:
        return ""
    name = unicodedata.normalize("NFKD", name)
    name = "".join(ch for ch in name if not unicodedata.combining(ch))
    name = re.sub(r"[^A-Za-z0-9 ]", " ", name.upper())
    tokens = [t for t in name.split() if t not in HONORIFICS]
    return " ".join(sorted(tokens))


def name_similarity(a: str, b: str) -> float:
    """Similarity in [0, 1] between two person names."""
    n1, n2 = normalize_name(a), normalize_name(b)
    if not n1 or not n2:
        return 0.0
    if n1 == n2:
        return 1.0
    return SequenceMatcher(None, n1, n2).ratio()


def is_exact_match(a: str, b: str) -> bool:
    return bool(normalize_name(a)) and normalize_name(a) == normalize_name(b)
