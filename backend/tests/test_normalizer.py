"""Tests for query normalization, trigram similarity and keyword sets."""

import pytest

from codelink.services.normalizer import KeywordSet, TextNormalizer, trigram_similarity, trigrams


class TestTextNormalizer:
    """Test query cleanup and abbreviation expansion."""

    @pytest.fixture
    def normalizer(self) -> TextNormalizer:
        return TextNormalizer()

    def test_lowercases_and_trims(self, normalizer: TextNormalizer) -> None:
        """Test whitespace and case are normalized."""
        assert normalizer.normalize("  Essential   HYPERTENSION ") == "essential hypertension"

    def test_expands_abbreviations(self, normalizer: TextNormalizer) -> None:
        """Test the diabetes shorthand example."""
        assert normalizer.normalize("DM type 2 w/o comp") == (
            "type 2 diabetes mellitus without complications"
        )

    def test_expands_single_abbreviation(self, normalizer: TextNormalizer) -> None:
        assert normalizer.normalize("htn") == "hypertension"
        assert normalizer.normalize("fx of radius") == "fracture of radius"

    def test_does_not_expand_inside_words(self, normalizer: TextNormalizer) -> None:
        """Test 'mi' is not expanded inside 'mild' and 'dm' not inside 'admission'."""
        assert normalizer.normalize("mild admission") == "mild admission"

    def test_strips_accents(self, normalizer: TextNormalizer) -> None:
        assert normalizer.normalize("Ménière disease") == "meniere disease"

    def test_strips_edge_punctuation(self, normalizer: TextNormalizer) -> None:
        assert normalizer.normalize("  chest pain?! ") == "chest pain"

    def test_empty_input(self, normalizer: TextNormalizer) -> None:
        """Test empty and whitespace-only queries normalize to empty."""
        assert normalizer.normalize("") == ""
        assert normalizer.normalize("   ") == ""

    def test_normalization_is_idempotent(self, normalizer: TextNormalizer) -> None:
        """Test normalizing a normalized query changes nothing."""
        for query in ["DM type 2 w/o comp", "htn with chf", "s/p fx of radius", "Acute MI", "pneumonia"]:
            once = normalizer.normalize(query)
            assert normalizer.normalize(once) == once, query

    def test_custom_abbreviations(self) -> None:
        normalizer = TextNormalizer({"ckd": "chronic kidney disease"})
        assert normalizer.normalize("CKD stage 3") == "chronic kidney disease stage 3"
        assert normalizer.normalize("htn") == "htn"


class TestTrigrams:
    """Test pg_trgm compatible trigram similarity."""

    def test_trigrams_are_padded_per_word(self) -> None:
        assert trigrams("cat") == {"  c", " ca", "cat", "at "}

    def test_identical_strings(self) -> None:
        assert trigram_similarity("femur fracture", "Femur Fracture") == pytest.approx(1.0)

    def test_disjoint_strings(self) -> None:
        assert trigram_similarity("femur", "xyz") == 0.0

    def test_empty_strings(self) -> None:
        assert trigram_similarity("", "femur") == 0.0

    def test_partial_overlap(self) -> None:
        # 4 trigrams of "hyp" inside 12 trigrams of "chronic hyp"
        assert trigram_similarity("chronic hyp", "hyp") == pytest.approx(4 / 12)

    def test_similarity_is_symmetric(self) -> None:
        a, b = "hypertension", "hypertensive heart disease"
        assert trigram_similarity(a, b) == pytest.approx(trigram_similarity(b, a))


class TestKeywordSet:
    """Test keyword set matching."""

    def test_whole_word_terms(self) -> None:
        keywords = KeywordSet.of("imaging", ["ct", "x-ray"])
        assert keywords.matches("CT of the chest")
        assert keywords.matches("X-ray exam of wrist")
        assert not keywords.matches("Doctor visit")

    def test_stem_terms(self) -> None:
        keywords = KeywordSet.of("neuro", ["neurolog*"])
        assert keywords.matches("Neurological examination")
        assert not keywords.matches("Neuroma excision")

    def test_first_match(self) -> None:
        keywords = KeywordSet.of("fracture", ["fracture*"])
        assert keywords.first_match("Open treatment of FRACTURES") == "fracture"
        assert keywords.first_match("Office visit") is None

    def test_none_and_empty(self) -> None:
        keywords = KeywordSet.of("empty", [])
        assert not keywords.matches("anything")
        assert not KeywordSet.of("x", ["x"]).matches(None)
