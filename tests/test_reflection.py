"""Tests for reflection intake."""

import pytest

from memledger.config import LedgerConfig
from memledger.ledger import Ledger
from memledger.protocols import LedgerNotInitializedError
from memledger.reflection import (
    confidence_level,
    ingest_reflections,
    kind_for_type,
    parse_reflection,
)


class TestMapping:
    def test_kind_for_type(self):
        assert kind_for_type("preference") == "semantic"
        assert kind_for_type("Principle") == "reflection"
        assert kind_for_type("moment") == "episodic"
        assert kind_for_type("unheard-of") == "semantic"
        assert kind_for_type(None) == "semantic"

    def test_confidence_levels(self):
        assert confidence_level(0.97) == "explicit"
        assert confidence_level(0.7) == "implied"
        assert confidence_level(0.5) == "inferred"
        assert confidence_level(0.1) == "speculative"


class TestParse:
    """Tests for parse_reflection."""

    def test_full_record(self):
        parsed = parse_reflection(
            {
                "type": "Preference",
                "content": "Prefers dark mode",
                "tags": ["ui"],
                "confidence": {"score": 0.8},
                "source_quote": "I always use dark mode",
            }
        )

        assert parsed == {
            "type": "preference",
            "content": "Prefers dark mode",
            "tags": ["ui"],
            "confidence": {"score": 0.8, "level": "implied"},
            "source_quote": "I always use dark mode",
        }

    def test_defaults(self):
        parsed = parse_reflection({"content": "Lives in Lisbon"})

        assert parsed == {"type": "fact", "content": "Lives in Lisbon", "tags": []}

    @pytest.mark.parametrize(
        "record",
        [
            "not an object",
            {"type": "fact"},
            {"content": ""},
            {"content": "x", "confidence": 1.5},
            {"content": "x", "tags": "ui"},
        ],
    )
    def test_malformed(self, record):
        with pytest.raises(ValueError):
            parse_reflection(record)


class TestIngest:
    """Tests for ingest_reflections against a real ledger."""

    def test_stores_valid_records(self, ledger):
        records = [
            {"type": "preference", "content": "Likes tea", "tags": ["drinks"]},
            {"type": "moment", "content": "Finished the marathon"},
            {"type": "principle", "content": "Be kind", "confidence": 0.99},
        ]

        result = ingest_reflections(ledger, records)

        assert len(result.stored) == 3
        assert [r.envelope.kind for r in result.stored] == ["semantic", "episodic", "reflection"]
        assert all(r.envelope.scope == "user" for r in result.stored)
        assert result.stored[0].envelope.topic_tags == ["preference", "drinks"]
        assert ledger.load(result.stored[2].envelope_id).content["confidence"]["level"] == (
            "explicit"
        )

    def test_skips_malformed_and_duplicates(self, ledger):
        """Test that bad records are reported without failing the batch."""
        records = [
            {"content": "Likes tea"},
            {"content": ""},
            {"content": "likes TEA"},
            42,
            {"content": "Owns a bike"},
        ]

        result = ingest_reflections(ledger, records, scope="agent")

        assert len(result.stored) == 2
        assert [position for position, _ in result.skipped] == [1, 3]
        assert result.duplicates == 1
        assert result.to_dict()["skipped"][1]["index"] == 3

    def test_ingested_memories_reach_packs(self, ledger):
        ingest_reflections(ledger, [{"type": "fact", "content": "Works on compilers"}])

        pack = ledger.compile_context_pack("learn about the user")

        assert [s.content["content"] for s in pack.included] == ["Works on compilers"]

    def test_needs_initialized_ledger(self, tmp_path):
        ledger = Ledger(LedgerConfig(home=tmp_path / "fresh"))

        with pytest.raises(LedgerNotInitializedError):
            ingest_reflections(ledger, [{"content": "x"}])
