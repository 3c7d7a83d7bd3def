"""Tests for facet_core.risk (phrase tables + scorer)."""

import pytest
from unittest.mock import patch

from facet_core.risk import RiskLevel, RiskScorer
from facet_core.risk.phrases import Phrase, PhraseKind, RiskCategory
from facet_core.risk.scorer import InterventionPriority, PhraseIndex, fallback_score, normalize


@pytest.fixture
def scorer():
    return RiskScorer()


class TestLevels:
    @pytest.mark.parametrize("aggregate,level", [
        (0.0, RiskLevel.NONE),
        (0.99, RiskLevel.NONE),
        (1.0, RiskLevel.LOW),
        (4.0, RiskLevel.MODERATE),
        (6.0, RiskLevel.HIGH),
        (7.99, RiskLevel.HIGH),
        (8.0, RiskLevel.CRITICAL),
        (10.0, RiskLevel.CRITICAL),
    ])
    def test_from_aggregate(self, aggregate, level):
        assert RiskLevel.from_aggregate(aggregate) == level


class TestScoring:
    def test_neutral_message_scores_none(self, scorer):
        score = scorer.score("I'm feeling pretty good today")
        assert score.aggregate == 0.0
        assert score.level == RiskLevel.NONE
        assert score.immediacy == 0.0
        assert score.confidence == pytest.approx(0.7)
        assert score.risk_indicators == ()

    def test_self_injury_with_time_reference_is_critical(self, scorer):
        score = scorer.score("I want to hurt myself right now")
        assert score.level == RiskLevel.CRITICAL
        assert score.is_critical
        assert score.immediacy >= 9
        assert "hurt myself" in score.risk_indicators
        assert "immediate_intervention_needed" in score.flags

    def test_immediate_phrase_pins_immediacy(self, scorer):
        score = scorer.score("this is goodbye, I wrote a note")
        assert score.immediacy == 10.0
        assert score.level == RiskLevel.CRITICAL

    def test_apostrophe_less_variant_matches(self, scorer):
        with_apostrophe = scorer.score("I can't cope with any of this")
        without = scorer.score("I cant cope with any of this")
        assert with_apostrophe.aggregate == without.aggregate > 0

    def test_curly_apostrophes_are_normalized(self):
        assert normalize("I CAN’T   cope") == "i can't cope"

    def test_protective_factors_reduce_aggregate(self, scorer):
        bare = scorer.score("I feel hopeless about everything")
        protected = scorer.score("I feel hopeless but my family and my therapist are there")
        assert protected.aggregate < bare.aggregate
        assert "my family" in protected.protective_indicators

    def test_protective_factors_never_lift_critical_phrase_out_of_critical(self, scorer):
        score = scorer.score("I want to hurt myself but my family and my kids need me")
        assert score.protective_indicators == ("my family", "my kids")
        assert score.aggregate == 8.0
        assert score.level == RiskLevel.CRITICAL

    def test_breadth_raises_aggregate(self, scorer):
        single = scorer.score("I feel hopeless")
        broad = scorer.score("I feel hopeless and all alone and I can't cope")
        assert broad.aggregate > single.aggregate

    def test_multiple_indicators_flag(self, scorer):
        score = scorer.score("hopeless, all alone, can't cope, breaking down")
        assert "multiple_indicators" in score.flags

    def test_short_input_lowers_confidence(self, scorer):
        short = scorer.score("suicidal")
        longer = scorer.score("I have been feeling suicidal lately")
        assert short.confidence < longer.confidence

    def test_category_scores_cover_every_category(self, scorer):
        score = scorer.score("hello")
        assert set(score.category_scores) == {c.value for c in RiskCategory}

    def test_word_boundaries(self, scorer):
        # "sadness" must not match the keyword "sad"
        assert scorer.score("a story about sadness in literature").aggregate == 0.0


class TestAdjustments:
    def test_history_escalation(self, scorer):
        flat = scorer.score("I feel hopeless", history=(5.0, 5.0, 5.0))
        rising = scorer.score("I feel hopeless", history=(2.0, 3.0, 5.0))
        assert rising.aggregate == pytest.approx(flat.aggregate * 1.15, abs=0.01)
        assert "history_escalation" in rising.flags

    def test_short_history_ignored(self, scorer):
        score = scorer.score("I feel hopeless", history=(1.0, 9.0))
        assert "history_escalation" not in score.flags

    def test_cultural_adjustment_bounded(self, scorer):
        base = scorer.score("I feel hopeless")
        adjusted = scorer.score("I feel hopeless", cultural_context="stoic")
        assert adjusted.aggregate == pytest.approx(base.aggregate + 0.5)
        assert adjusted.cultural_adjustment == pytest.approx(0.5)

    def test_cultural_adjustment_never_crosses_into_critical(self, scorer):
        # 7.75 before adjustment; +0.5 would cross 8
        score = scorer.score(
            "voices telling me things, I feel hopeless and all alone and can't cope",
            cultural_context="stoic",
        )
        assert score.level != RiskLevel.CRITICAL
        assert score.aggregate < 8.0

    def test_cultural_adjustment_never_drops_out_of_critical(self, scorer):
        score = scorer.score("I want to hurt myself but my family", cultural_context="expressive")
        assert score.level == RiskLevel.CRITICAL

    def test_unknown_culture_is_noop(self, scorer):
        base = scorer.score("I feel hopeless")
        other = scorer.score("I feel hopeless", cultural_context="unknown")
        assert other.aggregate == base.aggregate


class TestPriority:
    def test_critical_message_has_high_priority(self, scorer):
        score = scorer.score("I want to kill myself tonight")
        assert score.intervention_priority in (InterventionPriority.HIGH, InterventionPriority.CRITICAL)

    def test_neutral_message_has_low_priority(self, scorer):
        assert scorer.score("lovely weather").intervention_priority == InterventionPriority.LOW


class TestFailureHandling:
    def test_internal_error_yields_fallback(self, scorer):
        with patch.object(scorer, "_score", side_effect=RuntimeError("boom")):
            score = scorer.score("anything")
        assert score == fallback_score()
        assert score.level == RiskLevel.MODERATE
        assert "fallback_mode" in score.flags

    def test_summary_shape(self, scorer):
        summary = scorer.score("I feel hopeless").summary()
        assert set(summary) == {
            "level", "aggregate", "immediacy", "confidence",
            "interventionPriority", "riskIndicators", "protectiveIndicators",
        }

    def test_to_dict_includes_categories(self, scorer):
        data = scorer.score("I feel hopeless").to_dict()
        assert data["categoryScores"]["hopelessness"] > 0
        assert "flags" in data


class TestPhraseIndex:
    def test_longest_phrase_wins(self):
        index = PhraseIndex([
            Phrase("end it", PhraseKind.RISK, RiskCategory.DISTRESS, 1.0),
            Phrase("end it all", PhraseKind.RISK, RiskCategory.SELF_HARM, 9.0),
        ])
        matches = index.scan("i want to end it all")
        assert [p.text for p in matches] == ["end it all"]
