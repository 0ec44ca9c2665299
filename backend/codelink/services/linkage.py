"""Ranking of validated diagnosis to procedure links.

Also holds the keyword expansion used when no vector candidates are
available for a diagnosis: title words are mapped to procedure
terminology so plain text search can still find related procedures.
"""

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from codelink.schemas.base import LinkStatus, RelationshipType
from codelink.schemas.codes import CodeEntry, LinkCandidate
from codelink.services.normalizer import KeywordSet

logger = logging.getLogger(__name__)

DEFAULT_RATIONALE = "Related procedure"
RATIONALE_SEPARATOR = "; "

MAX_FALLBACK_KEYWORDS = 8
MIN_KEYWORD_LENGTH = 4

# Condition term -> procedure terminology
MEDICAL_TERM_EXPANSIONS: dict[str, tuple[str, ...]] = {
    # Endocrine
    "hypothyroidism": ("thyroid", "tsh", "thyroxine", "thyroid function"),
    "hyperthyroidism": ("thyroid", "tsh", "thyroxine", "thyroid function"),
    "diabetes": ("glucose", "blood sugar", "hemoglobin a1c", "insulin", "diabetic"),
    "thyroid": ("tsh", "thyroxine", "thyroid function", "thyroid scan"),
    # Cardiovascular
    "hypertension": ("blood pressure", "cardiac", "echocardiogram", "ekg"),
    "heart": ("cardiac", "echocardiogram", "ekg", "stress test", "coronary"),
    "myocardial": ("cardiac", "heart", "coronary", "troponin"),
    # Respiratory
    "asthma": ("pulmonary", "lung function", "spirometry", "respiratory"),
    "pneumonia": ("chest", "lung", "respiratory", "culture", "xray"),
    # Infectious
    "infection": ("culture", "test", "antibody", "antigen", "pathogen"),
    "sepsis": ("blood culture", "culture", "infectious disease"),
    # Renal
    "kidney": ("renal", "creatinine", "urinalysis"),
    "nephropathy": ("kidney", "renal", "creatinine", "urinalysis"),
    # Hepatic
    "liver": ("hepatic", "bilirubin"),
    "hepatitis": ("liver", "hepatic", "viral hepatitis"),
    # Hematology
    "anemia": ("blood", "hemoglobin", "iron", "ferritin", "cbc"),
    "bleeding": ("coagulation", "prothrombin", "clotting"),
    # Laboratory
    "blood": ("laboratory", "test", "panel", "screening"),
    "urine": ("urinalysis", "urine test", "culture"),
}

CHAPTER_EXPANSIONS: dict[str, tuple[str, ...]] = {
    "endocrine": ("hormone", "metabolic", "laboratory"),
    "infectious": ("culture", "test", "pathogen"),
}

CODE_EXPANSIONS: tuple[tuple[re.Pattern[str], tuple[str, ...]], ...] = (
    (re.compile(r"^E0[0-7]"), ("thyroid", "tsh")),
    (re.compile(r"^E1[01]"), ("glucose", "diabetic")),
    (re.compile(r"^I[0-5]\d"), ("cardiac", "heart")),
)

KEYWORD_STOPWORDS = frozenset({"unspecified", "other", "certain", "with", "without"})

_NON_WORD = re.compile(r"[^\w\s]")


def title_keywords(title: str) -> list[str]:
    """Lowercased title words long enough to be meaningful."""
    words = _NON_WORD.sub(" ", title.lower()).split()
    return [word for word in words if len(word) >= MIN_KEYWORD_LENGTH]


def expand_medical_terms(diagnosis: CodeEntry, max_keywords: int = MAX_FALLBACK_KEYWORDS) -> list[str]:
    """Keywords for a plain text procedure search on a diagnosis.

    Title words come first, followed by mapped procedure terminology,
    chapter expansions and code-prefix expansions. Stopwords are
    dropped and the list is capped.
    """
    keywords = title_keywords(diagnosis.title)
    expanded: dict[str, None] = dict.fromkeys(keywords)

    for keyword in keywords:
        expanded.update(dict.fromkeys(MEDICAL_TERM_EXPANSIONS.get(keyword, ())))

    chapter = (diagnosis.chapter or "").lower()
    for fragment, terms in CHAPTER_EXPANSIONS.items():
        if fragment in chapter:
            expanded.update(dict.fromkeys(terms))

    code = diagnosis.code.upper()
    for pattern, terms in CODE_EXPANSIONS:
        if pattern.match(code):
            expanded.update(dict.fromkeys(terms))

    filtered = [term for term in expanded if term not in KEYWORD_STOPWORDS]
    return filtered[:max_keywords]


@dataclass(frozen=True)
class RelationshipRule:
    relationship: RelationshipType
    chapters: tuple[str, ...]
    keywords: KeywordSet

    def matches(self, procedure: CodeEntry) -> bool:
        chapter = (procedure.chapter or "").lower()
        if any(fragment in chapter for fragment in self.chapters):
            return True
        return self.keywords.matches(procedure.description)


# Priority order, first match wins
RELATIONSHIP_RULES: tuple[RelationshipRule, ...] = (
    RelationshipRule(
        RelationshipType.DIAGNOSTIC,
        ("pathology",),
        KeywordSet.of("diagnostic", ["test*", "culture*", "specimen*", "biops*"]),
    ),
    RelationshipRule(
        RelationshipType.THERAPEUTIC,
        ("surgery",),
        KeywordSet.of("therapeutic", ["repair*", "excision", "removal", "replacement"]),
    ),
    RelationshipRule(
        RelationshipType.MONITORING,
        (),
        KeywordSet.of("monitoring", ["blood", "glucose", "pressure", "monitor*", "screening"]),
    ),
    RelationshipRule(
        RelationshipType.IMAGING,
        ("radiology",),
        KeywordSet.of("imaging", ["xray", "x-ray", "ct", "mri", "ultrasound", "scan*"]),
    ),
)


class RelationshipClassifier:
    """Assigns a relationship type from a procedure's category and wording."""

    def __init__(self, rules: Iterable[RelationshipRule] | None = None) -> None:
        self._rules = tuple(RELATIONSHIP_RULES if rules is None else rules)

    def classify(self, procedure: CodeEntry) -> RelationshipType:
        for rule in self._rules:
            if rule.matches(procedure):
                return rule.relationship
        return RelationshipType.RELATED


def compose_rationale(link: LinkCandidate) -> str:
    """Join the rationales of the fired rules in evaluation order."""
    if not link.applied_rules:
        return DEFAULT_RATIONALE
    return RATIONALE_SEPARATOR.join(rule.rationale for rule in link.applied_rules)


class LinkageRanker:
    """Orders approved links and annotates them for display.

    Rejected links never leave the ranker.
    """

    def __init__(self, classifier: RelationshipClassifier | None = None) -> None:
        self._classifier = classifier or RelationshipClassifier()

    def rank(self, links: Sequence[LinkCandidate], limit: int) -> list[LinkCandidate]:
        """Filter to approved links, sort and truncate.

        Ordering: validation score descending, then procedure code.
        """
        approved = [link for link in links if link.status == LinkStatus.APPROVED]
        approved.sort(key=lambda link: (-link.validation_score, link.procedure.code))

        ranked = approved[:max(limit, 0)]
        for link in ranked:
            link.relationship_type = self._classifier.classify(link.procedure)
            link.rationale = compose_rationale(link)

        logger.debug(f"Linkage ranking: {len(approved)}/{len(links)} approved, {len(ranked)} returned")
        return ranked
