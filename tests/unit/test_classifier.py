"""Tests for the staged relevance classifier."""

from datetime import date

import pytest

from leadminer.cache import TTLCache
from leadminer.classifier import Classifier, EventDateFilter, consistency_score
from leadminer.config import BudgetConfig, ClassifierConfig
from leadminer.exceptions import BudgetExceededError, ClassificationError, InvalidCandidateError
from leadminer.limits import BudgetGuard
from leadminer.protocols import (
    BusinessCategory,
    Candidate,
    LexicalSignals,
    RelevanceJudgment,
    VerificationResult,
)
from tests.helpers.fakes import B2B_TEXT, RAFFLE_ONLY_TEXT, ScriptedTextClassifier
from tests.helpers.metric_delta import metric_delta

TRAVEL_SIGNALS = LexicalSignals(auction=("silent auction",), travel=("trip",), nonprofit=("nonprofit",))


def judgment(relevant=True, confidence=0.9):
    return RelevanceJudgment(relevant=relevant, confidence=confidence, rationale="scripted")


class TestConsistencyScore:
    """Agreement discounted by confidence drift."""

    def test_no_extra_passes(self):
        assert consistency_score(judgment(), []) == 1.0

    def test_agreeing_pass_with_drift(self):
        assert consistency_score(judgment(True, 0.9), [judgment(True, 0.7)]) == pytest.approx(0.8)

    def test_disagreeing_pass(self):
        assert consistency_score(judgment(True, 0.9), [judgment(False, 0.9)]) == 0.0

    def test_split_passes(self):
        score = consistency_score(judgment(True, 0.9), [judgment(True, 0.9), judgment(False, 0.9)])
        assert score == pytest.approx(0.5)

    def test_failed_pass_counts_against(self):
        assert consistency_score(judgment(True, 0.9), [None]) == 0.0


class TestDecisionRules:
    """Review band and confidence adjustments."""

    @pytest.fixture
    def classifier(self):
        return Classifier(ScriptedTextClassifier([judgment()]))

    @pytest.mark.parametrize("confidence", [0.60, 0.70, 0.80])
    def test_review_band_is_inclusive(self, classifier, confidence):
        assert classifier.needs_review(confidence, 1.0, TRAVEL_SIGNALS, BusinessCategory.NONPROFIT) is True

    @pytest.mark.parametrize("confidence", [0.59, 0.81, 0.95])
    def test_outside_review_band(self, classifier, confidence):
        assert classifier.needs_review(confidence, 1.0, TRAVEL_SIGNALS, BusinessCategory.NONPROFIT) is False

    def test_low_consistency_flags_review(self, classifier):
        assert classifier.needs_review(0.95, 0.69, TRAVEL_SIGNALS, BusinessCategory.NONPROFIT) is True

    def test_auction_without_travel_flags_review(self, classifier):
        signals = LexicalSignals(auction=("raffle",), nonprofit=("charity",))
        assert classifier.needs_review(0.95, 1.0, signals, BusinessCategory.NONPROFIT) is True

    def test_failed_verification_flags_nonprofit(self, classifier):
        failed = VerificationResult.failed("not found")
        assert classifier.needs_review(0.95, 1.0, TRAVEL_SIGNALS, BusinessCategory.NONPROFIT, failed) is True
        assert classifier.needs_review(0.95, 1.0, TRAVEL_SIGNALS, BusinessCategory.UNKNOWN, failed) is False

    def test_adjustments(self, classifier):
        assert classifier.adjust_confidence(0.9, BusinessCategory.NONPROFIT, False, "gala") == pytest.approx(0.72)
        assert classifier.adjust_confidence(0.9, BusinessCategory.VENDOR, True, "gala") == pytest.approx(0.45)
        assert classifier.adjust_confidence(0.8, BusinessCategory.NONPROFIT, True, "PTA gala") == pytest.approx(0.88)
        assert classifier.adjust_confidence(1.0, BusinessCategory.NONPROFIT, True, "parish gala") == pytest.approx(0.9)
        assert classifier.adjust_confidence(0.95, BusinessCategory.NONPROFIT, True, "school gala") == 1.0


class TestClassify:
    """End-to-end classification of single candidates."""

    @pytest.mark.asyncio
    async def test_relevant_nonprofit_travel_auction(self, make_candidate, relevant_judgment):
        text_classifier = ScriptedTextClassifier([relevant_judgment])
        result = await Classifier(text_classifier).classify(make_candidate())

        assert result.is_relevant is True
        assert result.business_category is BusinessCategory.NONPROFIT
        assert result.confidence_score == pytest.approx(0.99)
        assert result.self_consistency_score == pytest.approx(1.0)
        assert result.needs_review is False
        assert result.error is None
        assert len(text_classifier.calls) == 2
        assert "category=nonprofit" in result.reasoning

    @pytest.mark.asyncio
    async def test_b2b_page_is_never_relevant(self, make_candidate, relevant_judgment):
        candidate = make_candidate(title="Travel Auction Packages", text=B2B_TEXT)
        result = await Classifier(ScriptedTextClassifier([relevant_judgment])).classify(candidate)

        assert result.is_relevant is False
        assert result.business_category is BusinessCategory.B2B_SERVICE
        assert result.confidence_score == pytest.approx(0.45)

    @pytest.mark.asyncio
    async def test_negative_judgment_is_not_relevant(self, make_candidate):
        result = await Classifier(ScriptedTextClassifier([judgment(False, 0.95)])).classify(make_candidate())
        assert result.is_relevant is False

    @pytest.mark.asyncio
    async def test_borderline_confidence_goes_to_review(self, make_candidate):
        result = await Classifier(ScriptedTextClassifier([judgment(True, 0.7)])).classify(make_candidate())
        assert result.confidence_score == pytest.approx(0.77)
        assert result.is_relevant is False
        assert result.needs_review is True

    @pytest.mark.asyncio
    async def test_raffle_without_travel(self, make_candidate, relevant_judgment):
        candidate = make_candidate(title="Riverside Animal Shelter Raffle", text=RAFFLE_ONLY_TEXT)
        result = await Classifier(ScriptedTextClassifier([relevant_judgment])).classify(candidate)

        assert result.has_auction_signal is True
        assert result.has_travel_signal is False
        assert result.is_relevant is False
        assert result.needs_review is True

    @pytest.mark.asyncio
    async def test_unqualified_travel_auction_is_relevant(self, make_candidate, relevant_judgment):
        candidate = make_candidate(
            title="Harbor Arts Council - Annual Travel Auction",
            text="Our annual travel auction: win a week in Maui. Harbor Arts is a nonprofit.",
        )
        result = await Classifier(ScriptedTextClassifier([relevant_judgment])).classify(candidate)

        assert result.has_auction_signal is True
        assert result.has_travel_signal is True
        assert result.business_category is BusinessCategory.NONPROFIT
        assert result.is_relevant is True

    @pytest.mark.asyncio
    async def test_out_of_window_date_is_penalized(self, make_candidate, relevant_judgment):
        classifier = Classifier(
            ScriptedTextClassifier([relevant_judgment]),
            date_filter=EventDateFilter(date(2025, 3, 1), date(2025, 12, 31)),
        )
        result = await classifier.classify(make_candidate(event_date="February 1, 2026"))

        assert result.date_relevant is False
        assert result.confidence_score == pytest.approx(0.9 * 0.8 * 1.1)
        assert result.is_relevant is False
        assert result.needs_review is True

    @pytest.mark.asyncio
    async def test_inconsistent_passes_flag_review(self, make_candidate):
        text_classifier = ScriptedTextClassifier([judgment(True, 0.9), judgment(False, 0.9)])
        result = await Classifier(text_classifier).classify(make_candidate())
        assert result.self_consistency_score == 0.0
        assert result.needs_review is True

    @pytest.mark.asyncio
    async def test_extra_passes_follow_config(self, make_candidate, relevant_judgment):
        text_classifier = ScriptedTextClassifier([relevant_judgment])
        classifier = Classifier(text_classifier, config=ClassifierConfig(consistency_passes=4))
        await classifier.classify(make_candidate())
        assert len(text_classifier.calls) == 4

    @pytest.mark.asyncio
    async def test_invalid_candidate_raises(self):
        with pytest.raises(InvalidCandidateError):
            await Classifier(ScriptedTextClassifier([judgment()])).classify(Candidate(url="https://x.org"))


class TestFailures:
    """Conservative results instead of exceptions."""

    @pytest.mark.asyncio
    async def test_timeout_produces_review_flagged_failure(self, make_candidate, relevant_judgment):
        text_classifier = ScriptedTextClassifier([relevant_judgment], delay=0.5)
        classifier = Classifier(text_classifier, config=ClassifierConfig(timeout_seconds=0.01))

        result = await classifier.classify(make_candidate())

        assert result.is_relevant is False
        assert result.confidence_score == 0.0
        assert result.needs_review is True
        assert result.business_category is BusinessCategory.UNKNOWN
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_classifier_error_is_captured(self, make_candidate):
        text_classifier = ScriptedTextClassifier([ClassificationError("Malformed classification response")])
        with metric_delta("classification_failures_total", 1):
            result = await Classifier(text_classifier).classify(make_candidate())
        assert result.error == "Classification failed: Malformed classification response"
        assert result.reasoning == result.error

    @pytest.mark.asyncio
    async def test_failed_extra_pass_lowers_consistency(self, make_candidate, relevant_judgment):
        text_classifier = ScriptedTextClassifier([relevant_judgment, RuntimeError("connection reset")])
        result = await Classifier(text_classifier).classify(make_candidate())
        assert result.error is None
        assert result.self_consistency_score == 0.0
        assert result.needs_review is True

    @pytest.mark.asyncio
    async def test_budget_exhaustion_propagates(self, make_candidate):
        budget = BudgetGuard(BudgetConfig(max_classification_calls=0))
        classifier = Classifier(ScriptedTextClassifier([judgment()]), budget=budget)
        with pytest.raises(BudgetExceededError):
            await classifier.classify(make_candidate())

    @pytest.mark.asyncio
    async def test_budget_exhaustion_in_extra_pass_is_a_failed_pass(self, make_candidate, relevant_judgment):
        budget = BudgetGuard(BudgetConfig(max_classification_calls=1))
        text_classifier = ScriptedTextClassifier([relevant_judgment])
        result = await Classifier(text_classifier, budget=budget).classify(make_candidate())
        assert len(text_classifier.calls) == 1
        assert result.self_consistency_score == 0.0
        assert result.needs_review is True


class TestCachingAndBatches:
    @pytest.mark.asyncio
    async def test_primary_judgment_is_cached(self, make_candidate, relevant_judgment):
        text_classifier = ScriptedTextClassifier([relevant_judgment])
        classifier = Classifier(text_classifier, cache=TTLCache(name="classification"))
        candidate = make_candidate()

        first = await classifier.classify(candidate)
        second = await classifier.classify(candidate)

        assert first.is_relevant == second.is_relevant
        assert first.confidence_score == second.confidence_score
        # Second call reuses the primary judgment; only the extra pass is new.
        assert len(text_classifier.calls) == 3

    @pytest.mark.asyncio
    async def test_batch_preserves_order(self, make_candidate, relevant_judgment):
        classifier = Classifier(ScriptedTextClassifier([relevant_judgment], delay=0.001))
        candidates = [
            make_candidate(text=f"Lincoln PTA silent auction with a Maui trip, lot {i}, nonprofit") for i in range(6)
        ]
        batch = await classifier.classify_batch(candidates)
        assert [r.candidate_id for r in batch.results] == [c.id for c in candidates]

    @pytest.mark.asyncio
    async def test_batch_keeps_results_completed_before_budget_exhaustion(self, make_candidate):
        budget = BudgetGuard(BudgetConfig(max_classification_calls=2))
        config = ClassifierConfig(consistency_passes=2, max_concurrency=1)
        classifier = Classifier(ScriptedTextClassifier([judgment()]), config, budget=budget)
        candidates = [make_candidate(), make_candidate(), make_candidate()]

        batch = await classifier.classify_batch(candidates)

        assert [r.candidate_id for r in batch.results] == [candidates[0].id]
        assert batch.deferred == candidates[1:]
        assert batch.budget_exhausted is True
        assert isinstance(batch.budget_error, BudgetExceededError)

    @pytest.mark.asyncio
    async def test_batch_within_budget_defers_nothing(self, make_candidate):
        classifier = Classifier(ScriptedTextClassifier([judgment()]))

        batch = await classifier.classify_batch([make_candidate(), make_candidate()])

        assert len(batch.results) == 2
        assert batch.deferred == []
        assert batch.budget_exhausted is False

    @pytest.mark.asyncio
    async def test_apply_verification(self, make_candidate, relevant_judgment):
        classifier = Classifier(ScriptedTextClassifier([relevant_judgment]))
        result = await classifier.classify(make_candidate())
        assert result.needs_review is False

        updated = classifier.apply_verification(result, VerificationResult.failed("no registry match"))

        assert updated.verified is False
        assert updated.needs_review is True
        assert classifier.apply_verification(result, None) is result

    @pytest.mark.asyncio
    async def test_classification_stats(self, make_candidate, relevant_judgment):
        classifier = Classifier(ScriptedTextClassifier([relevant_judgment]))
        batch = await classifier.classify_batch(
            [make_candidate(), make_candidate(title="Travel Auction Packages", text=B2B_TEXT)]
        )
        results = batch.results
        stats = classifier.get_classification_stats(results)
        assert stats["total"] == 2
        assert stats["relevant"] == 1
        assert stats["categories"]["b2b_service"] == 1
        assert classifier.filter_by_confidence(results) == [results[0]]
