"""Tests for the identity kernel: evolution rules, epochs, cartouche,
signing, persistence and encrypted export."""

import json
import stat

import pytest

from memledger.crypto.codec import Codec
from memledger.crypto.keystore import KeyStore
from memledger.protocols import (
    ConfirmationRequiredError,
    DecryptionError,
    KernelLoadError,
    RecordValidationError,
)
from memledger.records.kernel import IdentityKernel


class TestDefaults:
    def test_new_kernel_defaults(self):
        kernel = IdentityKernel()

        assert kernel.values == []
        assert kernel.strictness == "medium"
        assert kernel.memory_defaults["default_ttl"] == "P30D"
        assert kernel.epoch_id.startswith("epoch_")
        assert kernel.lineage_ids() == [kernel.kernel_id]

    def test_unknown_confirmation_category(self):
        with pytest.raises(RecordValidationError):
            IdentityKernel(
                evolution_rules={"confirmation_required": ["everything"]},
            )


class TestEvolution:
    """Tests for value and boundary changes."""

    def test_value_change_needs_confirmation(self):
        kernel = IdentityKernel()

        with pytest.raises(ConfirmationRequiredError) as exc_info:
            kernel.add_value("honesty")
        assert exc_info.value.category == "value_changes"
        assert kernel.values == []

    def test_confirmed_value(self):
        kernel = IdentityKernel()

        assert kernel.add_value("honesty", confirmed=True) is True
        assert kernel.add_value("honesty", confirmed=True) is False
        assert kernel.values == ["honesty"]

    def test_no_confirmation_when_not_required(self):
        kernel = IdentityKernel(
            evolution_rules={"confirmation_required": [], "contradiction_handling": "newest_wins"}
        )

        assert kernel.add_boundary("no medical advice")

    def test_change_clears_signature(self, kernel):
        """Test that editing a signed kernel invalidates the signature."""
        assert kernel.signature
        kernel.add_value("patience", confirmed=True)

        assert kernel.signature is None
        assert not kernel.verify()


class TestEpochs:
    """Tests for epoch transitions."""

    def test_new_epoch_archives_id(self, kernel):
        old_id = kernel.kernel_id
        old_epoch = kernel.epoch_id

        state = kernel.new_epoch("major update")

        assert kernel.kernel_id != old_id
        assert kernel.kernel_history == [old_id]
        assert kernel.lineage_ids() == [old_id, kernel.kernel_id]
        assert state["epoch_id"] != old_epoch
        assert state["epoch_reason"] == "major update"

    def test_epoch_changes_cartouche_hash(self, kernel, key_store):
        """Test that the cartouche hash is bound to the epoch."""
        private_key = key_store.signing_key_pair().private_key
        before = dict(kernel.generate_cartouche(private_key))

        kernel.new_epoch(private_key=private_key)

        assert kernel.cartouche["cartouche_hash"] != before["cartouche_hash"]
        assert kernel.cartouche["cartouche_string"] == before["cartouche_string"]


class TestCartouche:
    def test_signed_cartouche_verifies(self, kernel, key_store):
        key_pair = key_store.signing_key_pair()
        cartouche = kernel.generate_cartouche(key_pair.private_key)

        assert cartouche["dialect_id"] == "GLYPH-1"
        assert kernel.verify_cartouche(key_pair.public_key)

    def test_unsigned_cartouche(self, kernel):
        kernel.generate_cartouche()

        assert not kernel.verify_cartouche()

    def test_glyphs_reflect_shape(self):
        kernel = IdentityKernel(threat_posture={"anti_poisoning_strictness": "paranoid"})

        assert kernel.generate_cartouche()["cartouche_string"] == "◉"


class TestSigning:
    def test_verify_with_trusted_key(self, kernel, codec):
        assert kernel.verify(codec.public_key)

    def test_verify_fails_with_other_key(self, kernel, tmp_path):
        other = Codec(KeyStore(tmp_path / "other"))

        assert not kernel.verify(other.public_key)

    def test_unsigned_kernel(self):
        assert not IdentityKernel().verify()


class TestPersistence:
    def test_save_and_load(self, kernel, tmp_path):
        path = tmp_path / "identity-kernel.json"
        kernel.save(path)

        loaded = IdentityKernel.load(path)

        assert loaded.to_dict() == kernel.to_dict()
        assert loaded.verify()
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_load_malformed(self, tmp_path):
        path = tmp_path / "identity-kernel.json"
        path.write_text(json.dumps({"kernel_id": ""}))

        with pytest.raises(KernelLoadError):
            IdentityKernel.load(path)

    def test_load_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            IdentityKernel.load(tmp_path / "missing.json")

    def test_context_format_omits_signature(self, kernel):
        view = kernel.to_context_format()

        assert view["kernel_id"] == kernel.kernel_id
        assert "signature" not in view
        assert view["invariants"]["values"] == ["honesty", "curiosity"]


class TestExport:
    """Tests for the encrypted export document."""

    def test_export_import(self, kernel, codec):
        document = kernel.export_payload(codec)

        assert document["encrypted"] is True
        assert "honesty" not in json.dumps(document)

        restored = IdentityKernel.from_export(document, codec)
        assert restored.to_dict() == kernel.to_dict()

    def test_foreign_key_cannot_open(self, kernel, codec, tmp_path):
        document = kernel.export_payload(codec)
        other = Codec(KeyStore(tmp_path / "other"))

        with pytest.raises(DecryptionError):
            IdentityKernel.from_export(document, other)

    def test_not_an_export(self, codec):
        with pytest.raises(RecordValidationError):
            IdentityKernel.from_export({"type": "something_else"}, codec)
