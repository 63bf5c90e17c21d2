"""Tests for the red flag lexicon and keyword detector."""

import pytest

from feedbackshield.errors import RecordNotFound, ValidationError
from feedbackshield.models.red_flag_keyword import RedFlagKeyword
from feedbackshield.services import keyword_service
from feedbackshield.services.keyword_service import KeywordDetector, KeywordMatch, score_matches


def match(keyword, severity, category="threats"):
    return KeywordMatch(
        keyword=keyword, category=category, severity=severity,
        occurrences=1, matched_by="literal", snippet=keyword,
    )


class TestScoreMatches:
    def test_no_matches_is_zero(self):
        assert score_matches([], decay=0.5) == 0.0

    def test_strongest_counts_in_full(self):
        assert score_matches([match("fan", 4), match("hot", 8)], decay=0.5) == 10.0

    def test_decay_factor_applies_to_the_rest(self):
        matches = [match("fan", 4), match("hot", 8)]
        assert score_matches(matches, decay=1.0) == 12.0
        assert score_matches(matches, decay=0.0) == 8.0

    def test_capped_at_twenty(self):
        matches = [match(f"k{i}", 10) for i in range(5)]
        assert score_matches(matches, decay=1.0) == 20.0


class TestKeywordDetector:
    """Detection against the seeded Swedish lexicon."""

    @pytest.fixture
    def detector(self):
        return KeywordDetector(decay_factor=0.5)

    def test_two_keywords_scenario(self, seeded_db, detector):
        """Severity 8 and severity 4 keywords both reported, score within bound."""
        result = detector.detect(seeded_db, "Personalen hotade mig, fan vad dåligt.", "sv")

        found = {m.keyword: m for m in result.matches}
        assert set(found) == {"hot", "fan"}
        assert found["hot"].severity == 8
        assert found["fan"].severity == 4
        assert result.score == 10.0
        assert result.score <= 20
        assert result.category_distribution["threats"] == 1
        assert result.category_distribution["profanity"] == 1

    def test_idempotent(self, seeded_db, detector):
        text = "Det var en bomb i butiken och helvete vilken kö."
        first = detector.detect(seeded_db, text, "sv")
        second = detector.detect(seeded_db, text, "sv")
        assert first.matches == second.matches
        assert first.score == second.score

    def test_clean_text(self, seeded_db, detector):
        result = detector.detect(seeded_db, "Trevlig personal och bra kaffe.", "sv")
        assert result.matches == []
        assert result.score == 0.0

    def test_score_capped(self, seeded_db, detector):
        result = detector.detect(seeded_db, "bomb döda våld tidsresor", "sv")
        assert len(result.matches) == 4
        assert result.score == 20.0

    def test_literal_and_pattern_hits_merge(self, seeded_db, detector):
        result = detector.detect(seeded_db, "Det var ett hot", "sv")
        assert len(result.matches) == 1
        assert result.matches[0].occurrences == 1
        assert result.matches[0].matched_by == "literal+pattern"

    def test_keywords_inside_other_words_do_not_match(self, seeded_db, detector):
        text = "Fantastisk personal, vi bodde på hotellet och allt var bra."
        result = detector.detect(seeded_db, text, "sv")
        assert result.matches == []
        assert result.score == 0.0

    def test_inflected_form_matches_through_pattern(self, seeded_db, detector):
        result = detector.detect(seeded_db, "hotade", "sv")
        assert [m.keyword for m in result.matches] == ["hot"]
        assert result.matches[0].matched_by == "pattern"

    def test_pattern_only_hit(self, seeded_db, detector):
        result = detector.detect(seeded_db, "Vi såg flying elephants vid kassan", "sv")
        assert [m.keyword for m in result.matches] == ["flygande elefanter"]
        assert result.matches[0].matched_by == "pattern"

    def test_repeated_occurrences_counted(self, seeded_db, detector):
        result = detector.detect(seeded_db, "skit skit", "sv")
        assert result.matches[0].occurrences == 2

    def test_language_filters_lexicon(self, seeded_db, detector):
        assert detector.detect(seeded_db, "The cashier was levitating", "sv").matches == []
        english = detector.detect(seeded_db, "The cashier was levitating", "en")
        assert [m.keyword for m in english.matches] == ["levitating"]

    def test_unsupported_language_rejected(self, seeded_db, detector):
        with pytest.raises(ValidationError):
            detector.detect(seeded_db, "text", "xx")

    def test_invalid_stored_pattern_is_skipped(self, detector):
        entries = [
            RedFlagKeyword(keyword="scam", category="threats", severity_level=5,
                           language_code="en", detection_pattern="(unclosed"),
        ]
        matches = detector.match_entries("total scam", entries)
        assert len(matches) == 1
        assert matches[0].matched_by == "literal"


class TestLexiconCuration:
    def test_seed_only_once(self, db):
        inserted = keyword_service.seed_default_keywords(db)
        assert inserted == len(keyword_service.DEFAULT_KEYWORDS)
        assert keyword_service.seed_default_keywords(db) == 0

    def test_create_normalizes_keyword(self, db):
        entry = keyword_service.create_keyword(db, "  Bedrägeri ", "impossible", 6, "sv", created_by="ops")
        assert entry.keyword == "bedrägeri"
        assert entry.is_active is True
        assert entry.created_by == "ops"

    def test_duplicate_rejected(self, db):
        keyword_service.create_keyword(db, "lurendrejeri", "impossible", 5, "sv")
        with pytest.raises(ValidationError):
            keyword_service.create_keyword(db, "lurendrejeri", "impossible", 5, "sv")

    def test_same_keyword_other_language_allowed(self, db):
        keyword_service.create_keyword(db, "bomb", "threats", 10, "sv")
        entry = keyword_service.create_keyword(db, "bomb", "threats", 10, "en")
        assert entry.language_code == "en"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"category": "spam"},
            {"severity_level": 0},
            {"severity_level": 11},
            {"language_code": "de"},
            {"detection_pattern": "([a-z"},
            {"keyword": "   "},
        ],
    )
    def test_invalid_fields_rejected(self, db, overrides):
        fields = {"keyword": "ogiltig", "category": "threats", "severity_level": 5, "language_code": "sv"}
        fields.update(overrides)
        with pytest.raises(ValidationError):
            keyword_service.create_keyword(db, **fields)

    def test_bulk_create_reports_errors(self, db):
        created, errors = keyword_service.bulk_create_keywords(
            db,
            [
                {"keyword": "första", "category": "profanity", "severity_level": 2},
                {"keyword": "andra", "category": "unknown", "severity_level": 2},
                {"keyword": "tredje", "category": "threats", "severity_level": 7, "language_code": "no"},
            ],
        )
        assert [k.keyword for k in created] == ["första", "tredje"]
        assert len(errors) == 1
        assert "andra" in errors[0]

    def test_deactivated_keyword_stops_matching(self, seeded_db):
        entry = next(k for k in keyword_service.get_active_keywords(seeded_db, "sv") if k.keyword == "bomb")
        keyword_service.deactivate_keyword(seeded_db, entry.id)

        result = KeywordDetector().detect(seeded_db, "bomb", "sv")
        assert result.matches == []
        # Soft delete: the row is still there
        assert seeded_db.get(RedFlagKeyword, entry.id).is_active is False

    def test_update_keyword(self, db):
        entry = keyword_service.create_keyword(db, "ljuga", "impossible", 3, "sv")
        updated = keyword_service.update_keyword(db, entry.id, severity_level=6)
        assert updated.severity_level == 6

    def test_update_rejects_unknown_field(self, db):
        entry = keyword_service.create_keyword(db, "ljuga", "impossible", 3, "sv")
        with pytest.raises(ValidationError):
            keyword_service.update_keyword(db, entry.id, keyword="annat")

    def test_missing_keyword(self, db):
        with pytest.raises(RecordNotFound):
            keyword_service.deactivate_keyword(db, 12345)

    def test_filters_and_search(self, seeded_db):
        threats = keyword_service.get_keywords_by_category(seeded_db, "threats", language="sv")
        assert threats
        assert all(k.category == "threats" for k in threats)
        # Highest severity first
        assert threats[0].severity_level == 10

        assert [k.keyword for k in keyword_service.search_keywords(seeded_db, "helvet")] == ["helvete"]

    def test_statistics(self, seeded_db):
        stats = keyword_service.get_keyword_statistics(seeded_db)
        assert stats["total_keywords"] == len(keyword_service.DEFAULT_KEYWORDS)
        assert stats["active_keywords"] == stats["total_keywords"]
        assert stats["language_distribution"]["en"] == 1
        assert stats["category_distribution"]["profanity"] == 3
