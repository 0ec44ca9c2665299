"""Clinical validation rules for diagnosis to procedure links.

The rule table is plain data: each ClinicalRule pairs a predicate over
a LinkContext with a fixed delta and a rationale template. The
validator evaluates every rule in table order, sums the deltas of the
rules that fire and clamps the result.

Rule categories:
- Blocking: procedure domain (cardiovascular, obstetric, neurological,
  congenital repair, abdominal organ, limb) unrelated to the diagnosis
- Anatomical agreement: fracture diagnoses only, sites must overlap or
  be a curated related pair
- Boosting: procedure category matches the diagnosis category

The deltas are tuned heuristics, not certified clinical guidance.
"""

import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass

from codelink.schemas.base import AnatomicalTag, LinkStatus, RuleCategory
from codelink.schemas.codes import AppliedRule, CodeEntry, LinkCandidate
from codelink.services.anatomy import (
    LOWER_LIMB_TAGS,
    UPPER_LIMB_TAGS,
    AnatomicalSiteExtractor,
    AnatomyAgreement,
    format_sites,
)
from codelink.services.normalizer import KeywordSet

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL_THRESHOLD = 0.65
DEFAULT_CONFIDENCE_CEILING = 0.95
DEFAULT_BASELINE = 0.5

# Rounding applied before clamping so float noise cannot flip approval
SCORE_PRECISION = 6


@dataclass(frozen=True)
class LinkContext:
    """Everything a rule predicate may look at for one pairing."""

    diagnosis: CodeEntry
    procedure: CodeEntry
    diagnosis_sites: frozenset[AnatomicalTag]
    procedure_sites: frozenset[AnatomicalTag]
    anatomy: AnatomyAgreement

    @property
    def diagnosis_text(self) -> str:
        return self.diagnosis.description

    @property
    def procedure_text(self) -> str:
        return self.procedure.description

    def template_values(self) -> dict[str, str]:
        return {
            "dx_code": self.diagnosis.code,
            "dx_title": self.diagnosis.title,
            "dx_sites": format_sites(self.diagnosis_sites),
            "px_code": self.procedure.code,
            "px_title": self.procedure.title,
            "px_sites": format_sites(self.procedure_sites),
        }


Predicate = Callable[[LinkContext], bool]


@dataclass(frozen=True)
class ClinicalRule:
    """One entry of the rule table."""

    rule_id: str
    category: RuleCategory
    delta: float
    rationale: str
    predicate: Predicate

    def __post_init__(self) -> None:
        if self.category == RuleCategory.BLOCKING and self.delta >= 0:
            raise ValueError(f"Blocking rule {self.rule_id} must have a negative delta")
        if self.category == RuleCategory.BOOSTING and self.delta <= 0:
            raise ValueError(f"Boosting rule {self.rule_id} must have a positive delta")

    def fires(self, context: LinkContext) -> bool:
        return self.predicate(context)

    def apply(self, context: LinkContext) -> AppliedRule:
        return AppliedRule(
            rule_id=self.rule_id,
            category=self.category,
            delta=self.delta,
            rationale=self.rationale.format(**context.template_values()),
        )


# Predicate builders

def procedure_mentions(keywords: KeywordSet) -> Predicate:
    return lambda ctx: keywords.matches(ctx.procedure_text)


def diagnosis_mentions(keywords: KeywordSet) -> Predicate:
    return lambda ctx: keywords.matches(ctx.diagnosis_text)


def diagnosis_code(pattern: str) -> Predicate:
    compiled = re.compile(pattern, re.IGNORECASE)
    return lambda ctx: compiled.search(ctx.diagnosis.code) is not None


def procedure_code(pattern: str) -> Predicate:
    compiled = re.compile(pattern, re.IGNORECASE)
    return lambda ctx: compiled.search(ctx.procedure.code) is not None


def _chapter_matches(chapter: str | None, fragments: tuple[str, ...]) -> bool:
    if not chapter:
        return False
    lowered = chapter.lower()
    return any(fragment in lowered for fragment in fragments)


def diagnosis_chapter(*fragments: str) -> Predicate:
    lowered = tuple(f.lower() for f in fragments)
    return lambda ctx: _chapter_matches(ctx.diagnosis.chapter, lowered)


def procedure_chapter(*fragments: str) -> Predicate:
    lowered = tuple(f.lower() for f in fragments)
    return lambda ctx: _chapter_matches(ctx.procedure.chapter, lowered)


def anatomy_is(*states: AnatomyAgreement) -> Predicate:
    return lambda ctx: ctx.anatomy in states


def all_of(*predicates: Predicate) -> Predicate:
    return lambda ctx: all(p(ctx) for p in predicates)


def any_of(*predicates: Predicate) -> Predicate:
    return lambda ctx: any(p(ctx) for p in predicates)


def not_(predicate: Predicate) -> Predicate:
    return lambda ctx: not predicate(ctx)


# Keyword sets

FRACTURE = KeywordSet.of("fracture", ["fracture*"])
SEQUELA = KeywordSet.of("sequela", ["sequela*"])

CARDIOVASCULAR_PROCEDURE = KeywordSet.of("cardiovascular procedure", [
    "cardiac", "heart", "coronary", "cardiovascular", "valve", "pacemaker",
    "defibrillator", "electrocardiogram", "ecg", "ekg", "echocardiograph*",
    "angioplasty", "atrial", "ventricular",
])
CARDIOVASCULAR_DIAGNOSIS = KeywordSet.of("cardiovascular diagnosis", [
    "heart", "cardiac", "cardio*", "coronary", "myocardial", "hypertensi*",
    "atrial", "ventricular", "angina", "arrhythmia", "valve",
])

OBSTETRIC_PROCEDURE = KeywordSet.of("obstetric procedure", [
    "obstetric*", "pregnan*", "delivery", "cesarean", "fetal", "antepartum",
    "postpartum", "amniocentesis", "labor",
])
OBSTETRIC_DIAGNOSIS = KeywordSet.of("obstetric diagnosis", [
    "pregnan*", "obstetric*", "gestation*", "labor", "delivery", "puerperium",
    "postpartum", "antepartum", "fetal",
])

NEUROLOGICAL_PROCEDURE = KeywordSet.of("neurological procedure", [
    "neurolog*", "brain", "cranial", "craniotomy", "craniectomy",
    "intracranial", "cerebral", "electroencephalogra*", "eeg",
    "spinal cord",
])
NEUROLOGICAL_DIAGNOSIS = KeywordSet.of("neurological diagnosis", [
    "neurolog*", "brain", "cerebral", "intracranial", "cranial", "epilep*",
    "seizure*", "stroke", "nerve", "neuropath*", "spinal cord", "concussion",
    "dementia", "parkinson*", "multiple sclerosis",
])

CONGENITAL_PROCEDURE = KeywordSet.of("congenital repair", [
    "congenital", "atresia", "hypospadias", "cleft", "omphalocele",
    "gastroschisis", "tetralogy",
])
CONGENITAL_DIAGNOSIS = KeywordSet.of("congenital diagnosis", [
    "congenital", "atresia", "cleft", "malformation*", "anomal*",
])

ABDOMINAL_PROCEDURE = KeywordSet.of("abdominal organ procedure", [
    "gastric", "gastrectomy", "gastrostomy", "gastroenter*", "hepat*", "liver",
    "biliary", "cholecyst*", "bowel", "intestin*", "colon", "colectomy",
    "append*", "pancrea*", "splen*", "laparotomy",
    "duoden*", "esophag*", "jejun*", "ileum", "ileal",
])
ABDOMINAL_DIAGNOSIS = KeywordSet.of("abdominal organ diagnosis", [
    "abdominal", "abdomen", "gastric", "gastritis", "gastroenter*", "hepat*",
    "liver", "biliary",
    "gallbladder", "cholecyst*", "bowel", "intestin*", "colon", "colitis",
    "append*", "pancrea*", "splen*", "hernia", "duoden*", "esophag*",
    "peritoni*", "digestive",
])

MENTAL_HEALTH_PROCEDURE_EXEMPTION = KeywordSet.of("psychiatric procedure", [
    "psychiatr*", "mental",
])

FRACTURE_REPAIR = KeywordSet.of("fracture repair", [
    "fracture*", "repair*", "fixation", "fix", "osteotomy", "reduction",
    "open treatment", "closed treatment", "percutaneous skeletal fixation",
    "arthrodesis", "orif",
])
IMAGING = KeywordSet.of("imaging", [
    "x-ray", "xray", "radiolog*", "radiograph*", "ct", "computed tomograph*",
    "mri", "magnetic resonance", "ultrasound", "scan*", "imaging",
])
IMMOBILIZATION = KeywordSet.of("immobilization", [
    "cast*", "splint*", "strapping", "immobiliz*",
])
MUSCULOSKELETAL_PROCEDURE = KeywordSet.of("musculoskeletal procedure", [
    "bone*", "joint*", "muscle*", "tendon*", "ligament*", "orthop*",
    "arthro*", "musculoskeletal",
])
PATHOGEN_TESTS = KeywordSet.of("pathogen tests", [
    "culture*", "test*", "specimen*", "pathogen*", "antibod*", "antigen*",
    "nucleic acid", "infectious agent", "sensitivity",
])
INJURY_REPAIR = KeywordSet.of("injury repair", [
    "repair*", "treatment", "closure", "debridement", "wound", "fixation",
])
MONITORING = KeywordSet.of("monitoring", [
    "blood", "glucose", "pressure", "monitor*", "screening", "hemoglobin a1c",
    "lipid panel",
])
THYROID_TESTS = KeywordSet.of("thyroid tests", [
    "thyroid*", "tsh", "thyrotropin", "t3", "t4", "thyroxine", "triiodothyronine",
])
HORMONE_TESTS = KeywordSet.of("hormone panels", [
    "hormone*", "insulin", "cortisol", "cortisone", "aldosterone", "glucagon",
    "parathormone", "testosterone", "estradiol", "hemoglobin a1c", "glycated",
])
FOLLOW_UP_VISIT = KeywordSet.of("follow-up evaluation", [
    "office visit", "outpatient visit", "office or other outpatient",
    "evaluation", "exam*", "follow-up",
])
REHABILITATION = KeywordSet.of("rehabilitation", [
    "rehab*", "therapy", "therapeutic", "physical therapy", "occupational therapy",
    "gait training",
])

_SURGERY = ("surgery",)
_RADIOLOGY = ("radiology",)
_LABORATORY = ("pathology", "laboratory")
_SEQUELA_CODE = r"^[A-Z][0-9][0-9A-Z]\.?[0-9A-Z]{3}S$"


def _limb(tags: frozenset[AnatomicalTag], limb_tags: frozenset[AnatomicalTag]) -> bool:
    return bool(tags & limb_tags)


def diagnosis_is_upper_limb(ctx: LinkContext) -> bool:
    return _limb(ctx.diagnosis_sites, UPPER_LIMB_TAGS) or re.match(r"^S[4-6]\d", ctx.diagnosis.code) is not None


def diagnosis_is_lower_limb(ctx: LinkContext) -> bool:
    return _limb(ctx.diagnosis_sites, LOWER_LIMB_TAGS) or re.match(r"^S[7-9]\d", ctx.diagnosis.code) is not None


def procedure_is_upper_limb(ctx: LinkContext) -> bool:
    return _limb(ctx.procedure_sites, UPPER_LIMB_TAGS) or re.match(r"^2[3-6]\d{3}$", ctx.procedure.code) is not None


def procedure_is_lower_limb(ctx: LinkContext) -> bool:
    return _limb(ctx.procedure_sites, LOWER_LIMB_TAGS) or re.match(r"^2[78]\d{3}$", ctx.procedure.code) is not None


@dataclass(frozen=True)
class DomainGuard:
    """A clinical domain whose procedures need a diagnosis of that domain."""

    rule_id: str
    label: str
    penalty: float
    procedure_terms: KeywordSet
    diagnosis_terms: KeywordSet
    diagnosis_codes: str
    procedure_codes: str | None = None

    def to_rule(self) -> ClinicalRule:
        in_procedure_domain: Predicate = procedure_mentions(self.procedure_terms)
        if self.procedure_codes:
            in_procedure_domain = any_of(in_procedure_domain, procedure_code(self.procedure_codes))
        in_diagnosis_domain = any_of(
            diagnosis_mentions(self.diagnosis_terms),
            diagnosis_code(self.diagnosis_codes),
        )
        return ClinicalRule(
            rule_id=self.rule_id,
            category=RuleCategory.BLOCKING,
            delta=self.penalty,
            rationale=f"Blocked: {self.label} procedure for a non-{self.label} diagnosis",
            predicate=all_of(in_procedure_domain, not_(in_diagnosis_domain)),
        )


DOMAIN_GUARDS: tuple[DomainGuard, ...] = (
    DomainGuard(
        rule_id="block-cardiovascular",
        label="cardiovascular",
        penalty=-0.8,
        procedure_terms=CARDIOVASCULAR_PROCEDURE,
        diagnosis_terms=CARDIOVASCULAR_DIAGNOSIS,
        diagnosis_codes=r"^I[0-5]\d",
        procedure_codes=r"^(33\d{3}|929[2-9]\d|93[0-7]\d{2})$",
    ),
    DomainGuard(
        rule_id="block-obstetric",
        label="obstetric",
        penalty=-0.8,
        procedure_terms=OBSTETRIC_PROCEDURE,
        diagnosis_terms=OBSTETRIC_DIAGNOSIS,
        diagnosis_codes=r"^O\d",
        procedure_codes=r"^59\d{3}$",
    ),
    DomainGuard(
        rule_id="block-neurological",
        label="neurological",
        penalty=-0.8,
        procedure_terms=NEUROLOGICAL_PROCEDURE,
        diagnosis_terms=NEUROLOGICAL_DIAGNOSIS,
        diagnosis_codes=r"^([GS][0-4]\d|I6\d)",
        procedure_codes=r"^(61\d{3}|62[0-2]\d{2})$",
    ),
    DomainGuard(
        rule_id="block-congenital",
        label="congenital",
        penalty=-0.9,
        procedure_terms=CONGENITAL_PROCEDURE,
        diagnosis_terms=CONGENITAL_DIAGNOSIS,
        diagnosis_codes=r"^Q\d",
    ),
    DomainGuard(
        rule_id="block-abdominal-organ",
        label="abdominal organ",
        penalty=-0.9,
        procedure_terms=ABDOMINAL_PROCEDURE,
        diagnosis_terms=ABDOMINAL_DIAGNOSIS,
        diagnosis_codes=r"^([KR]\d|C1[5-9]|C2[0-6]|S3[6-9])",
        procedure_codes=r"^(4[3-8]\d{3}|381\d{2})$",
    ),
)

_is_fracture = diagnosis_mentions(FRACTURE)
_anatomy_compatible = anatomy_is(
    AnatomyAgreement.MATCH, AnatomyAgreement.RELATED, AnatomyAgreement.UNKNOWN
)
_is_sequela = any_of(diagnosis_code(_SEQUELA_CODE), diagnosis_mentions(SEQUELA))
_is_surgical = procedure_chapter(*_SURGERY)
_is_radiology = procedure_chapter(*_RADIOLOGY)
_is_laboratory = procedure_chapter(*_LABORATORY)

ANATOMICAL_MISMATCH_PENALTY = -0.7


def default_rule_table() -> tuple[ClinicalRule, ...]:
    """Build the standard rule table, blocking rules first."""
    blocking = [guard.to_rule() for guard in DOMAIN_GUARDS]
    blocking += [
        ClinicalRule(
            rule_id="block-upper-limb-procedure",
            category=RuleCategory.BLOCKING,
            delta=-0.8,
            rationale="Blocked: upper extremity procedure for a lower extremity diagnosis",
            predicate=all_of(
                diagnosis_is_lower_limb,
                not_(diagnosis_is_upper_limb),
                procedure_is_upper_limb,
                not_(procedure_is_lower_limb),
            ),
        ),
        ClinicalRule(
            rule_id="block-lower-limb-procedure",
            category=RuleCategory.BLOCKING,
            delta=-0.8,
            rationale="Blocked: lower extremity procedure for an upper extremity diagnosis",
            predicate=all_of(
                diagnosis_is_upper_limb,
                not_(diagnosis_is_lower_limb),
                procedure_is_lower_limb,
                not_(procedure_is_upper_limb),
            ),
        ),
        ClinicalRule(
            rule_id="block-mental-health-surgery",
            category=RuleCategory.BLOCKING,
            delta=-0.5,
            rationale="Blocked: surgical procedure for a mental health diagnosis",
            predicate=all_of(
                any_of(diagnosis_chapter("mental"), diagnosis_code(r"^F\d")),
                _is_surgical,
                not_(procedure_mentions(MENTAL_HEALTH_PROCEDURE_EXEMPTION)),
            ),
        ),
    ]

    anatomical = [
        ClinicalRule(
            rule_id="anatomical-mismatch",
            category=RuleCategory.BLOCKING,
            delta=ANATOMICAL_MISMATCH_PENALTY,
            rationale="Wrong anatomical site: diagnosis involves {dx_sites}, procedure involves {px_sites}",
            predicate=all_of(_is_fracture, anatomy_is(AnatomyAgreement.MISMATCH)),
        ),
    ]

    boosting = [
        ClinicalRule(
            rule_id="fracture-surgical-repair",
            category=RuleCategory.BOOSTING,
            delta=0.4,
            rationale="Surgical fracture treatment for {dx_sites}",
            predicate=all_of(_is_fracture, _anatomy_compatible, _is_surgical, procedure_mentions(FRACTURE_REPAIR)),
        ),
        ClinicalRule(
            rule_id="fracture-imaging",
            category=RuleCategory.BOOSTING,
            delta=0.3,
            rationale="Imaging of the fracture site ({dx_sites})",
            predicate=all_of(_is_fracture, _anatomy_compatible, _is_radiology, procedure_mentions(IMAGING)),
        ),
        ClinicalRule(
            rule_id="fracture-immobilization",
            category=RuleCategory.BOOSTING,
            delta=0.25,
            rationale="Casting or splinting for fracture immobilization",
            predicate=all_of(_is_fracture, _anatomy_compatible, procedure_mentions(IMMOBILIZATION)),
        ),
        ClinicalRule(
            rule_id="fracture-imaging-pathway",
            category=RuleCategory.BOOSTING,
            delta=0.3,
            rationale="Imaging-first pathway for suspected fracture",
            predicate=all_of(_is_fracture, _anatomy_compatible, _is_radiology),
        ),
        ClinicalRule(
            rule_id="musculoskeletal-procedure",
            category=RuleCategory.BOOSTING,
            delta=0.25,
            rationale="Musculoskeletal procedure for a musculoskeletal condition",
            predicate=all_of(
                diagnosis_code(r"^M\d"),
                procedure_chapter("surgery", "medicine"),
                procedure_mentions(MUSCULOSKELETAL_PROCEDURE),
            ),
        ),
        ClinicalRule(
            rule_id="infectious-diagnostics",
            category=RuleCategory.BOOSTING,
            delta=0.2,
            rationale="Pathogen testing for an infectious disease",
            predicate=all_of(
                any_of(diagnosis_chapter("infectious"), diagnosis_code(r"^[AB]\d")),
                any_of(procedure_chapter("pathology", "laboratory", "category ii"), procedure_mentions(PATHOGEN_TESTS)),
            ),
        ),
        ClinicalRule(
            rule_id="injury-surgical",
            category=RuleCategory.BOOSTING,
            delta=0.25,
            rationale="Surgical treatment of an injury",
            predicate=all_of(diagnosis_code(r"^S\d"), _anatomy_compatible, _is_surgical, procedure_mentions(INJURY_REPAIR)),
        ),
        ClinicalRule(
            rule_id="injury-imaging",
            category=RuleCategory.BOOSTING,
            delta=0.2,
            rationale="Imaging for injury assessment",
            predicate=all_of(diagnosis_code(r"^S\d"), _anatomy_compatible, _is_radiology),
        ),
        ClinicalRule(
            rule_id="chronic-monitoring",
            category=RuleCategory.BOOSTING,
            delta=0.2,
            rationale="Monitoring for a chronic condition",
            predicate=all_of(diagnosis_code(r"^(E1[01]|I1[0-5])"), procedure_mentions(MONITORING)),
        ),
        ClinicalRule(
            rule_id="thyroid-function",
            category=RuleCategory.BOOSTING,
            delta=0.45,
            rationale="Thyroid function testing for a thyroid disorder",
            predicate=all_of(diagnosis_code(r"^E0[0-7]"), procedure_mentions(THYROID_TESTS)),
        ),
        ClinicalRule(
            rule_id="endocrine-hormone-panel",
            category=RuleCategory.BOOSTING,
            delta=0.2,
            rationale="Hormone panel for an endocrine disorder",
            predicate=all_of(
                any_of(diagnosis_chapter("endocrine", "metabolic"), diagnosis_code(r"^E\d")),
                procedure_mentions(HORMONE_TESTS),
            ),
        ),
        ClinicalRule(
            rule_id="laboratory-workup",
            category=RuleCategory.BOOSTING,
            delta=0.3,
            rationale="Laboratory workup for a {dx_title} diagnosis",
            predicate=all_of(
                any_of(_is_laboratory, procedure_chapter("category ii")),
                diagnosis_chapter("endocrine", "infectious", "blood"),
            ),
        ),
        ClinicalRule(
            rule_id="laboratory-general",
            category=RuleCategory.BOOSTING,
            delta=0.1,
            rationale="Laboratory testing",
            predicate=_is_laboratory,
        ),
        ClinicalRule(
            rule_id="sequela-follow-up",
            category=RuleCategory.BOOSTING,
            delta=0.2,
            rationale="Follow-up evaluation for a sequela encounter",
            predicate=all_of(
                _is_sequela,
                any_of(procedure_code(r"^99[12]\d{2}$"), procedure_mentions(FOLLOW_UP_VISIT)),
            ),
        ),
        ClinicalRule(
            rule_id="sequela-rehabilitation",
            category=RuleCategory.BOOSTING,
            delta=0.2,
            rationale="Rehabilitation for a sequela encounter",
            predicate=all_of(_is_sequela, procedure_mentions(REHABILITATION)),
        ),
        ClinicalRule(
            rule_id="sequela-imaging",
            category=RuleCategory.BOOSTING,
            delta=0.15,
            rationale="Follow-up imaging for a sequela encounter",
            predicate=all_of(_is_sequela, _is_radiology),
        ),
    ]

    return tuple(blocking + anatomical + boosting)


class ClinicalRuleValidator:
    """Scores candidate procedures for a diagnosis against the rule table.

    Validation is a pure function of the diagnosis, the procedure, the
    raw similarity and the rule table.

    Usage:
        validator = ClinicalRuleValidator()
        link = validator.validate(diagnosis, procedure, raw_similarity=0.72)
        link.status, link.validation_score, link.triggered_rule_ids
    """

    def __init__(
        self,
        rules: Iterable[ClinicalRule] | None = None,
        extractor: AnatomicalSiteExtractor | None = None,
        approval_threshold: float = DEFAULT_APPROVAL_THRESHOLD,
        confidence_ceiling: float = DEFAULT_CONFIDENCE_CEILING,
        baseline: float = DEFAULT_BASELINE,
    ) -> None:
        self.rules = tuple(default_rule_table() if rules is None else rules)
        self.extractor = extractor or AnatomicalSiteExtractor()
        self.approval_threshold = approval_threshold
        self.confidence_ceiling = confidence_ceiling
        self.baseline = baseline

        if not 0.0 < confidence_ceiling <= 1.0:
            raise ValueError(f"Confidence ceiling must be in (0, 1], got {confidence_ceiling}")

        rule_ids = [rule.rule_id for rule in self.rules]
        if len(rule_ids) != len(set(rule_ids)):
            raise ValueError("Rule ids must be unique")

    def build_context(
        self,
        diagnosis: CodeEntry,
        procedure: CodeEntry,
        diagnosis_sites: frozenset[AnatomicalTag] | None = None,
    ) -> LinkContext:
        if diagnosis_sites is None:
            diagnosis_sites = self.extractor.extract_entry(diagnosis)
        procedure_sites = self.extractor.extract_entry(procedure)
        return LinkContext(
            diagnosis=diagnosis,
            procedure=procedure,
            diagnosis_sites=diagnosis_sites,
            procedure_sites=procedure_sites,
            anatomy=self.extractor.agreement(diagnosis_sites, procedure_sites),
        )

    def evaluate(self, context: LinkContext) -> tuple[AppliedRule, ...]:
        """Apply every rule in table order, returning those that fired."""
        return tuple(rule.apply(context) for rule in self.rules if rule.fires(context))

    def score(self, initial: float, applied: Sequence[AppliedRule]) -> float:
        total = round(initial + sum(rule.delta for rule in applied), SCORE_PRECISION)
        return min(max(total, 0.0), self.confidence_ceiling)

    def validate(
        self,
        diagnosis: CodeEntry,
        procedure: CodeEntry,
        raw_similarity: float | None = None,
        diagnosis_sites: frozenset[AnatomicalTag] | None = None,
    ) -> LinkCandidate:
        """Validate one diagnosis/procedure pairing.

        Args:
            diagnosis: The confirmed diagnosis.
            procedure: A candidate procedure.
            raw_similarity: Vector similarity, or None for candidates
                found without vectors (scored from the baseline).
            diagnosis_sites: Precomputed diagnosis tags.

        Returns:
            LinkCandidate with score, fired rules and status.
        """
        context = self.build_context(diagnosis, procedure, diagnosis_sites)
        applied = self.evaluate(context)
        initial = self.baseline if raw_similarity is None else min(max(raw_similarity, 0.0), 1.0)
        score = self.score(initial, applied)
        status = LinkStatus.APPROVED if score >= self.approval_threshold else LinkStatus.REJECTED

        link = LinkCandidate(
            diagnosis=diagnosis,
            procedure=procedure,
            raw_similarity=raw_similarity,
            validation_score=score,
            applied_rules=applied,
            status=status,
        )

        if status == LinkStatus.REJECTED:
            logger.debug(
                f"Rejected {diagnosis.code} -> {procedure.code}: score={score:.3f}, "
                f"rules={link.triggered_rule_ids}"
            )
        return link

    def validate_all(
        self,
        diagnosis: CodeEntry,
        candidates: Sequence[tuple[CodeEntry, float | None]],
    ) -> list[LinkCandidate]:
        """Validate several candidates, extracting diagnosis sites once."""
        diagnosis_sites = self.extractor.extract_entry(diagnosis)
        return [
            self.validate(diagnosis, procedure, similarity, diagnosis_sites)
            for procedure, similarity in candidates
        ]
