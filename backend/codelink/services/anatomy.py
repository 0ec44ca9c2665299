"""Anatomical site extraction for diagnosis and procedure codes.

Sites are inferred in two passes:
1. Keyword matching on the description text
2. Code-range rules for ICD-10 injury categories and CPT
   musculoskeletal bands, each adding its tag only when no more
   specific keyword tag was found

Two tag sets agree when they share a tag or contain a curated related
pair (e.g. radius and forearm).
"""

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from codelink.schemas.base import AnatomicalTag
from codelink.schemas.codes import CodeEntry
from codelink.services.normalizer import KeywordSet

T = AnatomicalTag

ANATOMY_KEYWORDS: dict[AnatomicalTag, tuple[str, ...]] = {
    # Head and neck
    T.SKULL: ("skull", "cranium", "cranial vault", "head bone"),
    T.MANDIBLE: ("mandible", "mandibular", "jaw", "lower jaw", "alveolus", "alveolar"),
    T.MAXILLA: ("maxilla", "maxillary", "upper jaw"),
    T.FACE: ("face", "facial", "zygoma*", "orbital floor"),
    T.NECK: ("neck",),
    # Upper limb
    T.SHOULDER: ("shoulder", "glenohumeral", "acromioclavicular", "rotator cuff"),
    T.CLAVICLE: ("clavicle", "clavicular", "collarbone"),
    T.SCAPULA: ("scapula", "scapular", "shoulder blade", "glenoid"),
    T.HUMERUS: ("humerus", "humeral", "upper arm"),
    T.ELBOW: ("elbow", "olecranon"),
    T.RADIUS: ("radius", "radial"),
    T.ULNA: ("ulna", "ulnar"),
    T.FOREARM: ("forearm", "short arm"),
    T.WRIST: ("wrist", "carpal", "carpus", "scaphoid"),
    T.HAND: ("hand", "metacarp*", "phalang*", "finger*", "thumb"),
    # Lower limb
    T.HIP: ("hip", "femoral head", "acetabul*"),
    T.FEMUR: ("femur", "femoral shaft", "femoral fracture", "thigh"),
    T.KNEE: ("knee", "patella", "patellar", "tibial plateau", "menisc*"),
    T.TIBIA: ("tibia", "tibial", "shin"),
    T.FIBULA: ("fibula", "fibular"),
    T.ANKLE: ("ankle", "malleol*", "bimalleolar", "trimalleolar"),
    T.FOOT: ("foot", "feet", "tarsal", "metatars*", "toe", "toes", "calcane*"),
    # Axial skeleton
    T.SPINE: ("spine", "spinal", "vertebra*"),
    T.CERVICAL: ("cervical spine", "cervical vertebra*", "c-spine"),
    T.THORACIC: ("thoracic spine", "thoracic vertebra*", "t-spine"),
    T.LUMBAR: ("lumbar", "lumbosacral", "lower back", "l-spine"),
    # Trunk and organs
    T.CHEST: ("chest", "thorax", "rib", "ribs", "sternum", "sternal"),
    T.ABDOMEN: ("abdomen", "abdominal"),
    T.PELVIS: ("pelvis", "pelvic", "pubic", "sacrum", "sacral"),
    T.HEART: ("heart", "cardiac", "coronary"),
    T.LUNG: ("lung", "lungs", "pulmonary"),
    T.LIVER: ("liver", "hepatic"),
    T.KIDNEY: ("kidney", "kidneys", "renal"),
    T.BRAIN: ("brain", "cerebral", "intracranial"),
}

UPPER_LIMB_TAGS = frozenset({
    T.SHOULDER, T.CLAVICLE, T.SCAPULA, T.HUMERUS, T.ELBOW,
    T.RADIUS, T.ULNA, T.FOREARM, T.WRIST, T.HAND,
})

LOWER_LIMB_TAGS = frozenset({
    T.HIP, T.FEMUR, T.KNEE, T.TIBIA, T.FIBULA, T.ANKLE, T.FOOT,
})

_SHOULDER_GIRDLE = frozenset({T.SHOULDER, T.CLAVICLE, T.SCAPULA, T.HUMERUS})
_PELVIC_LIMB = LOWER_LIMB_TAGS | {T.PELVIS}

# Symmetric: each pair agrees in both directions
RELATED_TAG_PAIRS: frozenset[frozenset[AnatomicalTag]] = frozenset({
    frozenset({T.MANDIBLE, T.FACE}),
    frozenset({T.MANDIBLE, T.MAXILLA}),
    frozenset({T.MAXILLA, T.FACE}),
    frozenset({T.RADIUS, T.FOREARM}),
    frozenset({T.ULNA, T.FOREARM}),
    frozenset({T.TIBIA, T.FIBULA}),
})

_NUMERIC_CODE = re.compile(r"^\d{5}$")


@dataclass(frozen=True)
class CodeRangeRule:
    """Maps a code prefix or a numeric CPT band to one tag.

    ``suppressed_by`` lists keyword tags that make the rule redundant.
    """

    tag: AnatomicalTag
    prefix: str | None = None
    low: int | None = None
    high: int | None = None
    suppressed_by: frozenset[AnatomicalTag] = field(default_factory=frozenset)

    @classmethod
    def for_prefix(cls, prefix: str, tag: AnatomicalTag, suppressed_by: Iterable[AnatomicalTag] = ()) -> "CodeRangeRule":
        return cls(tag=tag, prefix=prefix.upper(), suppressed_by=frozenset(suppressed_by))

    @classmethod
    def for_band(cls, low: int, high: int, tag: AnatomicalTag, suppressed_by: Iterable[AnatomicalTag] = ()) -> "CodeRangeRule":
        return cls(tag=tag, low=low, high=high, suppressed_by=frozenset(suppressed_by))

    def covers(self, code: str) -> bool:
        normalized = code.strip().upper()
        if self.prefix is not None:
            return normalized.startswith(self.prefix)
        if self.low is None or self.high is None or not _NUMERIC_CODE.match(normalized):
            return False
        return self.low <= int(normalized) <= self.high

    def applies(self, code: str, found: frozenset[AnatomicalTag] | set[AnatomicalTag]) -> bool:
        return self.covers(code) and not (self.suppressed_by & found)


CODE_RANGE_RULES: tuple[CodeRangeRule, ...] = (
    # ICD-10-CM injury categories
    CodeRangeRule.for_prefix("S02", T.FACE, suppressed_by={T.MANDIBLE, T.MAXILLA, T.SKULL, T.FACE}),
    CodeRangeRule.for_prefix("S42", T.SHOULDER, suppressed_by=_SHOULDER_GIRDLE),
    CodeRangeRule.for_prefix("S52", T.FOREARM, suppressed_by={T.RADIUS, T.ULNA, T.FOREARM}),
    CodeRangeRule.for_prefix("S62", T.HAND, suppressed_by={T.WRIST, T.HAND}),
    CodeRangeRule.for_prefix("S72", T.FEMUR, suppressed_by={T.HIP, T.FEMUR}),
    CodeRangeRule.for_prefix("S82", T.TIBIA, suppressed_by={T.KNEE, T.TIBIA, T.FIBULA, T.ANKLE}),
    CodeRangeRule.for_prefix("S92", T.FOOT, suppressed_by={T.ANKLE, T.FOOT}),
    # CPT musculoskeletal bands, disjoint within each region
    CodeRangeRule.for_band(23500, 23552, T.CLAVICLE, suppressed_by=_SHOULDER_GIRDLE),
    CodeRangeRule.for_band(23570, 23585, T.SCAPULA, suppressed_by=_SHOULDER_GIRDLE),
    CodeRangeRule.for_band(23600, 23630, T.HUMERUS, suppressed_by=_SHOULDER_GIRDLE),
    CodeRangeRule.for_band(23650, 23680, T.SHOULDER, suppressed_by=_SHOULDER_GIRDLE),
    CodeRangeRule.for_band(24000, 24999, T.HUMERUS, suppressed_by={T.HUMERUS, T.ELBOW}),
    CodeRangeRule.for_band(25000, 25999, T.RADIUS, suppressed_by={T.RADIUS, T.ULNA, T.FOREARM, T.WRIST}),
    CodeRangeRule.for_band(26000, 26999, T.HAND, suppressed_by={T.HAND}),
    CodeRangeRule.for_band(27000, 27036, T.PELVIS, suppressed_by=_PELVIC_LIMB),
    CodeRangeRule.for_band(27040, 27299, T.HIP, suppressed_by=_PELVIC_LIMB),
    CodeRangeRule.for_band(27300, 27599, T.FEMUR, suppressed_by=_PELVIC_LIMB),
    CodeRangeRule.for_band(27600, 27899, T.KNEE, suppressed_by=_PELVIC_LIMB),
    CodeRangeRule.for_band(28000, 28999, T.FOOT, suppressed_by={T.FOOT, T.ANKLE}),
)


class AnatomyAgreement(str, Enum):
    """How the anatomical sites of a diagnosis and a procedure relate."""

    UNKNOWN = "unknown"  # one side has no tags
    MATCH = "match"
    RELATED = "related"
    MISMATCH = "mismatch"


class AnatomicalSiteExtractor:
    """Infers anatomical tags from code descriptions and code ranges.

    Extraction is pure: the same text and code always produce the same
    tags.

    Usage:
        extractor = AnatomicalSiteExtractor()
        extractor.extract("Open treatment of distal radial fracture", "25607")
        # -> frozenset({AnatomicalTag.RADIUS})
    """

    def __init__(
        self,
        keywords: Mapping[AnatomicalTag, Iterable[str]] | None = None,
        range_rules: Iterable[CodeRangeRule] | None = None,
        related_pairs: Iterable[frozenset[AnatomicalTag]] | None = None,
    ) -> None:
        source = ANATOMY_KEYWORDS if keywords is None else keywords
        self._keyword_sets = [
            (tag, KeywordSet.of(tag.value, terms)) for tag, terms in source.items()
        ]
        self._range_rules = tuple(CODE_RANGE_RULES if range_rules is None else range_rules)
        self._related_pairs = frozenset(
            frozenset(pair) for pair in (RELATED_TAG_PAIRS if related_pairs is None else related_pairs)
        )

    def extract(self, text: str | None, code: str | None = None) -> frozenset[AnatomicalTag]:
        """Extract anatomical tags from a description and its code."""
        found = {tag for tag, keywords in self._keyword_sets if keywords.matches(text)}

        if code:
            keyword_tags = frozenset(found)
            for rule in self._range_rules:
                if rule.applies(code, keyword_tags):
                    found.add(rule.tag)

        return frozenset(found)

    def extract_entry(self, entry: CodeEntry) -> frozenset[AnatomicalTag]:
        return self.extract(entry.description, entry.code)

    def are_related(self, tag1: AnatomicalTag, tag2: AnatomicalTag) -> bool:
        return frozenset({tag1, tag2}) in self._related_pairs

    def agreement(
        self,
        diagnosis_tags: frozenset[AnatomicalTag],
        procedure_tags: frozenset[AnatomicalTag],
    ) -> AnatomyAgreement:
        """Compare the tags of a diagnosis and a procedure."""
        if not diagnosis_tags or not procedure_tags:
            return AnatomyAgreement.UNKNOWN
        if diagnosis_tags & procedure_tags:
            return AnatomyAgreement.MATCH
        for dx_tag in diagnosis_tags:
            for px_tag in procedure_tags:
                if self.are_related(dx_tag, px_tag):
                    return AnatomyAgreement.RELATED
        return AnatomyAgreement.MISMATCH

    def sites_agree(
        self,
        diagnosis_tags: frozenset[AnatomicalTag],
        procedure_tags: frozenset[AnatomicalTag],
    ) -> bool:
        """Check if two tag sets are compatible (unknown counts as agreement)."""
        return self.agreement(diagnosis_tags, procedure_tags) != AnatomyAgreement.MISMATCH


def format_sites(tags: Iterable[AnatomicalTag]) -> str:
    """Render tags for rationale text, e.g. "femur/knee"."""
    names = sorted(tag.value for tag in tags)
    return "/".join(names) if names else "unspecified site"
