"""Tests for relevance scoring and ranking."""

from datetime import timedelta

import pytest

from memledger.records.envelope import MemoryEnvelope
from memledger.relevance import (
    WEIGHTS,
    kind_score,
    rank,
    recency_score,
    risk_score,
    score,
    tag_overlap,
    tokenize_intent,
    value_alignment,
)


def envelope_at(now, kind="semantic", tags=None, risk="low", age_days=0.0):
    return MemoryEnvelope(
        kind=kind,
        content_address="local_" + "0" * 64,
        content_hash="f" * 64,
        topic_tags=tags or [],
        risk_class=risk,
        created_at=(now - timedelta(days=age_days)).isoformat(),
    )


class TestSubScores:
    """Tests for the individual factors."""

    def test_weights_sum_to_one(self):
        assert sum(WEIGHTS.values()) == pytest.approx(1.0)

    def test_tokenize(self):
        assert tokenize_intent("Learn about the project!") == ["learn", "about", "the", "project"]
        assert tokenize_intent("a to be") == []

    def test_recency_decays_over_a_year(self, now):
        assert recency_score(now, now) == 1.0
        assert recency_score(now - timedelta(days=365 / 2), now) == pytest.approx(0.5)
        assert recency_score(now - timedelta(days=800), now) == 0.0

    def test_kind_boosts(self):
        assert kind_score("semantic", "learn something") == 1.0
        assert kind_score("episodic", "our history") == 1.0
        assert kind_score("reflection", "weekly review") == 1.0
        assert kind_score("episodic", "chat") == 0.5
        assert kind_score("tombstone", "learn") == 0.0

    def test_tag_overlap(self):
        assert tag_overlap(["project", "status"], ["project"]) == 0.5
        assert tag_overlap([], ["project"]) == 0.5
        assert tag_overlap(["x"], []) == 0.5
        assert tag_overlap(["other"], ["project"]) == 0.0

    def test_value_alignment(self):
        assert value_alignment(["honesty-first"], ["honesty"]) == 0.9
        assert value_alignment(["cooking"], ["honesty"]) == 0.5

    def test_risk(self):
        assert risk_score("low", "anything") == 1.0
        assert risk_score("med", "anything") == 0.7
        assert risk_score("high", "casual chat") == 0.3
        assert risk_score("high", "handle private data") == 1.0


class TestScore:
    def test_score_in_unit_interval(self, now, kernel):
        envelope = envelope_at(now, tags=["honesty", "project"])

        assert 0.0 <= score(envelope, "learn about the project", kernel, now) <= 1.0

    def test_score_is_deterministic(self, now, kernel):
        envelope = envelope_at(now, age_days=10)

        assert score(envelope, "intent", kernel, now) == score(envelope, "intent", kernel, now)

    def test_high_risk_ranks_lower_for_casual_intent(self, now):
        low = envelope_at(now, risk="low")
        high = envelope_at(now, risk="high")

        assert score(low, "casual chat", None, now) > score(high, "casual chat", None, now)


class TestRank:
    def test_learn_intent_puts_semantic_first(self, now, kernel):
        """Test that equal-age memories are ordered by kind affinity."""
        envelopes = [
            envelope_at(now, kind="episodic"),
            envelope_at(now, kind="reflection"),
            envelope_at(now, kind="semantic"),
        ]

        ranked = rank(envelopes, "learn about the project", kernel, now)

        assert [e.kind for e, _ in ranked] == ["semantic", "reflection", "episodic"]

    def test_newer_first_when_otherwise_equal(self, now):
        older = envelope_at(now, age_days=2)
        newer = envelope_at(now, age_days=1)

        ranked = rank([older, newer], "x", None, now)

        assert ranked[0][0] is newer
