"""Text normalization, trigram similarity and keyword sets.

Shared by the lexical matcher (query normalization and fuzzy scoring),
the anatomical extractor and the rule table (keyword inference).
"""

import re
import unicodedata
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

# Common clinical shorthand seen in free-text diagnosis queries
DEFAULT_ABBREVIATIONS: dict[str, str] = {
    "dm type 2": "type 2 diabetes mellitus",
    "dm type 1": "type 1 diabetes mellitus",
    "dm": "diabetes mellitus",
    "htn": "hypertension",
    "mi": "myocardial infarction",
    "copd": "chronic obstructive pulmonary disease",
    "chf": "congestive heart failure",
    "w/o": "without",
    "w/": "with",
    "comp": "complications",
    "frac": "fracture",
    "fx": "fracture",
    "r/o": "rule out",
    "s/p": "status post",
    "hx": "history",
    "pt": "patient",
}

_WHITESPACE = re.compile(r"\s+")
_EDGE_PUNCTUATION = re.compile(r"^[^\w/]+|[^\w/]+$")
_TRIGRAM_WORDS = re.compile(r"[0-9a-z]+")


class TextNormalizer:
    """Lowercases, trims and expands known abbreviations.

    Usage:
        normalizer = TextNormalizer()
        normalizer.normalize("  DM type 2 w/o comp ")
        # -> "type 2 diabetes mellitus without complications"
    """

    def __init__(self, abbreviations: Mapping[str, str] | None = None) -> None:
        self._abbreviations = dict(DEFAULT_ABBREVIATIONS if abbreviations is None else abbreviations)
        # Longest abbreviation first so "dm type 2" wins over "dm"
        ordered = sorted(self._abbreviations, key=len, reverse=True)
        self._patterns = [
            (self._compile(abbrev), self._abbreviations[abbrev]) for abbrev in ordered
        ]

    @staticmethod
    def _compile(abbrev: str) -> re.Pattern[str]:
        escaped = re.escape(abbrev)
        if abbrev[-1].isalnum():
            return re.compile(rf"(?<![\w/]){escaped}(?!\w)")
        return re.compile(rf"(?<![\w/]){escaped}")

    def clean(self, text: str) -> str:
        """Lowercase, strip accents, collapse whitespace and edge punctuation."""
        decomposed = unicodedata.normalize("NFKD", text or "")
        unaccented = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
        cleaned = _WHITESPACE.sub(" ", unaccented.lower()).strip()
        return _EDGE_PUNCTUATION.sub("", cleaned)

    def normalize(self, text: str) -> str:
        """Clean the text and expand abbreviations.

        Args:
            text: Raw free-text query.

        Returns:
            Normalized query string (may be empty).
        """
        normalized = self.clean(text)
        if not normalized:
            return ""

        for pattern, expansion in self._patterns:
            normalized = pattern.sub(f" {expansion} ", normalized)

        return _WHITESPACE.sub(" ", normalized).strip()


def trigrams(text: str) -> set[str]:
    """Extract trigrams the way PostgreSQL pg_trgm does.

    Each alphanumeric word is lowercased and padded with two leading
    spaces and one trailing space before splitting into trigrams.
    """
    result: set[str] = set()
    for word in _TRIGRAM_WORDS.findall((text or "").lower()):
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            result.add(padded[i:i + 3])
    return result


def trigram_similarity(text1: str, text2: str) -> float:
    """Trigram similarity in [0, 1], compatible with pg_trgm ``similarity()``."""
    t1 = trigrams(text1)
    t2 = trigrams(text2)
    if not t1 or not t2:
        return 0.0
    return len(t1 & t2) / len(t1 | t2)


@dataclass(frozen=True)
class KeywordSet:
    """A named, finite set of trigger terms matched case-insensitively.

    Terms match at a word start. A trailing ``*`` marks a stem that may
    continue ("neurolog*" matches "neurological"); other terms must
    match a whole word or phrase.
    """

    name: str
    terms: tuple[str, ...]
    _pattern: re.Pattern[str] | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        parts = []
        for term in self.terms:
            if term.endswith("*"):
                parts.append(re.escape(term[:-1].lower()))
            else:
                parts.append(re.escape(term.lower()) + r"\b")
        pattern = re.compile(r"\b(?:" + "|".join(parts) + ")", re.IGNORECASE) if parts else None
        object.__setattr__(self, "_pattern", pattern)

    @classmethod
    def of(cls, name: str, terms: Iterable[str]) -> "KeywordSet":
        return cls(name=name, terms=tuple(terms))

    def matches(self, text: str | None) -> bool:
        """Check if any term occurs in the text."""
        if not text or self._pattern is None:
            return False
        return self._pattern.search(text) is not None

    def first_match(self, text: str | None) -> str | None:
        """Return the first matched fragment, lowercased."""
        if not text or self._pattern is None:
            return None
        found = self._pattern.search(text)
        return found.group(0).lower() if found else None
