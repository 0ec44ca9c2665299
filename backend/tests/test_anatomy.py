"""Tests for anatomical site extraction."""

import pytest

from codelink.schemas.base import AnatomicalTag as T
from codelink.services.anatomy import (
    CODE_RANGE_RULES,
    AnatomicalSiteExtractor,
    AnatomyAgreement,
    CodeRangeRule,
    format_sites,
)


@pytest.fixture
def extractor() -> AnatomicalSiteExtractor:
    return AnatomicalSiteExtractor()


class TestKeywordExtraction:
    """Test tags inferred from description text."""

    def test_radius_procedure(self, extractor: AnatomicalSiteExtractor) -> None:
        tags = extractor.extract(
            "Open treatment of distal radial extra-articular fracture, with internal fixation",
            "25607",
        )
        assert tags == frozenset({T.RADIUS})

    def test_mandible_procedure(self, extractor: AnatomicalSiteExtractor) -> None:
        tags = extractor.extract("Closed treatment of mandibular fracture with interdental fixation", "21453")
        assert tags == frozenset({T.MANDIBLE})

    def test_knee_arthroplasty(self, extractor: AnatomicalSiteExtractor) -> None:
        """Test the femur band does not add a tag when 'knee' is in the text."""
        tags = extractor.extract("Total knee arthroplasty", "27447")
        assert tags == frozenset({T.KNEE})

    def test_distinct_bones_are_not_grouped(self, extractor: AnatomicalSiteExtractor) -> None:
        tags = extractor.extract("Fracture of femur and tibia")
        assert tags == frozenset({T.FEMUR, T.TIBIA})

    def test_stem_keyword(self, extractor: AnatomicalSiteExtractor) -> None:
        assert T.HAND in extractor.extract("Fracture of third metacarpal bone")

    def test_no_anatomy(self, extractor: AnatomicalSiteExtractor) -> None:
        assert extractor.extract("Thyroid stimulating hormone (TSH)", "84443") == frozenset()

    def test_empty_text(self, extractor: AnatomicalSiteExtractor) -> None:
        assert extractor.extract("", None) == frozenset()
        assert extractor.extract(None) == frozenset()


class TestCodeRangeExtraction:
    """Test tags inferred from code ranges."""

    def test_range_tags(self, extractor: AnatomicalSiteExtractor) -> None:
        """Test each code band maps to exactly one tag when the text names no site."""
        cases = [
            ("S02.609A", T.FACE),
            ("S42.001A", T.SHOULDER),
            ("S52.90XA", T.FOREARM),
            ("S62.90XA", T.HAND),
            ("S72.90XA", T.FEMUR),
            ("S82.90XA", T.TIBIA),
            ("S92.90XA", T.FOOT),
            ("23500", T.CLAVICLE),
            ("23575", T.SCAPULA),
            ("23615", T.HUMERUS),
            ("23665", T.SHOULDER),
            ("24500", T.HUMERUS),
            ("25500", T.RADIUS),
            ("26600", T.HAND),
            ("27030", T.PELVIS),
            ("27130", T.HIP),
            ("27506", T.FEMUR),
            ("27750", T.KNEE),
            ("28400", T.FOOT),
        ]
        for code, tag in cases:
            assert extractor.extract("Unspecified injury", code) == frozenset({tag}), code

    def test_keyword_suppresses_range_rule(self, extractor: AnatomicalSiteExtractor) -> None:
        """Test S52 does not add forearm when the text names the radius."""
        tags = extractor.extract("Fracture of lower end of right radius", "S52.501A")
        assert tags == frozenset({T.RADIUS})

    def test_non_numeric_code_ignores_bands(self) -> None:
        rule = CodeRangeRule.for_band(25000, 25999, T.RADIUS)
        assert not rule.covers("2500T")
        assert rule.covers("25607")

    def test_clavicle_and_shoulder_bands_are_disjoint(self) -> None:
        bands = [r for r in CODE_RANGE_RULES if r.low is not None and 23000 <= r.low < 24000]
        for first in bands:
            for second in bands:
                if first is not second:
                    assert first.high < second.low or second.high < first.low


class TestAgreement:
    """Test site agreement between diagnosis and procedure."""

    def test_match(self, extractor: AnatomicalSiteExtractor) -> None:
        assert extractor.agreement(frozenset({T.RADIUS}), frozenset({T.RADIUS, T.WRIST})) == AnatomyAgreement.MATCH

    def test_related_pair_is_symmetric(self, extractor: AnatomicalSiteExtractor) -> None:
        assert extractor.agreement(frozenset({T.MANDIBLE}), frozenset({T.FACE})) == AnatomyAgreement.RELATED
        assert extractor.agreement(frozenset({T.FACE}), frozenset({T.MANDIBLE})) == AnatomyAgreement.RELATED
        assert extractor.are_related(T.TIBIA, T.FIBULA)
        assert extractor.are_related(T.FIBULA, T.TIBIA)

    def test_mismatch(self, extractor: AnatomicalSiteExtractor) -> None:
        assert extractor.agreement(frozenset({T.FEMUR}), frozenset({T.KNEE})) == AnatomyAgreement.MISMATCH
        assert not extractor.sites_agree(frozenset({T.MANDIBLE}), frozenset({T.RADIUS}))

    def test_unknown_counts_as_agreement(self, extractor: AnatomicalSiteExtractor) -> None:
        assert extractor.agreement(frozenset(), frozenset({T.KNEE})) == AnatomyAgreement.UNKNOWN
        assert extractor.sites_agree(frozenset({T.FEMUR}), frozenset())

    def test_extraction_is_pure(self, extractor: AnatomicalSiteExtractor) -> None:
        text = "Open treatment of femoral shaft fracture"
        assert extractor.extract(text, "27506") == extractor.extract(text, "27506")


def test_format_sites() -> None:
    assert format_sites({T.KNEE, T.FEMUR}) == "femur/knee"
    assert format_sites(()) == "unspecified site"
