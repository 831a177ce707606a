"""Tests for ledger records: envelopes, blobs and attestations."""

import base64

import pytest

from memledger.crypto.codec import generate_signing_key_pair
from memledger.protocols import (
    ContentIntegrityError,
    DecryptionError,
    NotFoundError,
    RecordValidationError,
)
from memledger.records.attestation import SigningIdentity
from memledger.records.blob import MemoryBlob, fetch_blob
from memledger.records.canonical import canonical_json, load_json_object
from memledger.records.envelope import Lineage, MemoryEnvelope, looks_like_envelope
from memledger.types import AttesterType, TrustLevel

HASH = "a" * 64


def make_envelope(**kwargs) -> MemoryEnvelope:
    fields = {"content_address": "local_" + "b" * 64, "content_hash": HASH}
    fields.update(kwargs)
    return MemoryEnvelope(**fields)


def other_identity(attester_id: str = "host-1") -> SigningIdentity:
    key_pair = generate_signing_key_pair()
    return SigningIdentity(
        attester_id=attester_id,
        private_key=key_pair.private_key,
        public_key=key_pair.public_key,
        attester_type=AttesterType.HOST.value,
        trust_level=TrustLevel.HOST_SIGNED.value,
    )


class TestCanonicalJson:
    def test_key_order_does_not_matter(self):
        """Test that equal objects encode to identical bytes."""
        assert canonical_json({"b": 1, "a": [1, 2]}) == canonical_json({"a": [1, 2], "b": 1})

    def test_no_whitespace_and_utf8(self):
        assert canonical_json({"k": "é"}) == '{"k":"é"}'.encode("utf-8")

    def test_load_rejects_non_object(self):
        with pytest.raises(ValueError):
            load_json_object(b"[1, 2]")
        with pytest.raises(ValueError):
            load_json_object(b"\xff\xfe")


class TestEnvelopeValidation:
    """Tests for envelope construction rules."""

    def test_defaults(self):
        envelope = make_envelope()

        assert envelope.scope == "agent"
        assert envelope.kind == "semantic"
        assert envelope.ttl_hint == "P30D"
        assert envelope.mlp_version == "0.2"
        assert not envelope.is_tombstone

    def test_invalid_enum(self):
        with pytest.raises(RecordValidationError):
            make_envelope(scope="everyone")
        with pytest.raises(RecordValidationError):
            make_envelope(kind="dream")

    def test_invalid_ttl(self):
        with pytest.raises(RecordValidationError):
            make_envelope(ttl_hint="30 days")

    def test_content_hash_required(self):
        """Test that a non-tombstone needs a SHA-256 content hash."""
        with pytest.raises(RecordValidationError):
            make_envelope(content_hash=None)
        with pytest.raises(RecordValidationError):
            make_envelope(content_hash="not-a-hash")

    def test_tombstone_rules(self):
        """Test that a tombstone must supersede and carry no content."""
        with pytest.raises(RecordValidationError):
            MemoryEnvelope(kind="tombstone")
        with pytest.raises(RecordValidationError):
            make_envelope(kind="tombstone", lineage=Lineage(supersedes=["x"]))

    def test_self_reference_rejected(self):
        with pytest.raises(RecordValidationError):
            make_envelope(envelope_id="e1", lineage=Lineage(parents=["e1"]))

    def test_round_trip_bytes(self):
        """Test that an envelope survives serialization unchanged."""
        envelope = make_envelope(topic_tags=["project"], lineage=Lineage(parents=["p1"]))
        restored = MemoryEnvelope.from_bytes(envelope.to_bytes())

        assert restored.to_dict() == envelope.to_dict()
        assert looks_like_envelope(envelope.to_dict())

    def test_create_tombstone(self):
        envelope = make_envelope()
        tombstone = envelope.create_tombstone(reason="content_correction")

        assert tombstone.is_tombstone
        assert tombstone.supersedes(envelope.envelope_id)
        assert tombstone.revocation.reason == "content_correction"
        assert tombstone.content_address is None

    def test_create_child(self):
        """Test that a child inherits metadata and links to its parent."""
        envelope = make_envelope(topic_tags=["a"], risk_class="med")
        child = envelope.create_child("local_" + "c" * 64, "d" * 64, supersede=True)

        assert child.lineage.parents == [envelope.envelope_id]
        assert child.lineage.supersedes == [envelope.envelope_id]
        assert child.topic_tags == ["a"]
        assert child.risk_class == "med"
        assert child.attestations == []


class TestAttestations:
    """Tests for signing and verification."""

    def test_sign_and_verify(self, identity):
        envelope = make_envelope()
        envelope.sign(identity)

        result = envelope.verify({identity.attester_id: identity.public_key})

        assert result.valid
        assert result.attestations[0].valid
        claims = {c["claim_type"] for c in envelope.attestations[0].claims}
        assert claims == {"authorship", "integrity"}

    def test_unsigned_is_invalid(self):
        result = make_envelope().verify()

        assert not result.valid
        assert result.reason == "no attestations"

    def test_tampered_field_fails(self, identity):
        """Test that changing a signed field invalidates the attestation."""
        envelope = make_envelope(topic_tags=["work"])
        envelope.sign(identity)
        envelope.topic_tags = ["play"]

        result = envelope.verify({identity.attester_id: identity.public_key})

        assert not result.valid
        assert result.attestations[0].reason == "signature mismatch"

    def test_cosign_keeps_existing(self, identity):
        """Test that a second attestation is appended and both verify."""
        envelope = make_envelope()
        envelope.sign(identity)
        host = other_identity()
        envelope.sign(host)

        result = envelope.verify(
            {identity.attester_id: identity.public_key, host.attester_id: host.public_key}
        )

        assert len(envelope.attestations) == 2
        assert result.valid
        assert [c.trust_level for c in result.attestations] == ["self_signed", "host_signed"]

    def test_one_bad_attestation_fails_overall(self, identity):
        """Test that validity needs every attestation to verify."""
        envelope = make_envelope()
        envelope.sign(identity)
        envelope.sign(other_identity())
        envelope.attestations[1].signature = envelope.attestations[0].signature

        result = envelope.verify()

        assert not result.valid
        assert len(result.failed) == 1

    def test_embedded_keys_can_be_disallowed(self, identity):
        """Test that without trusted keys strict verification fails."""
        envelope = make_envelope()
        envelope.sign(identity)

        assert envelope.verify(allow_embedded_keys=True).valid
        result = envelope.verify(allow_embedded_keys=False)
        assert not result.valid
        assert result.attestations[0].reason == "no public key available"

    def test_trusted_key_overrides_embedded(self, identity):
        """Test that a forged embedded key does not help a forger."""
        forger = other_identity(attester_id=identity.attester_id)
        envelope = make_envelope()
        envelope.sign(forger)

        assert not envelope.verify({identity.attester_id: identity.public_key}).valid

    def test_witness_claims(self, identity):
        witness = other_identity("witness-1")
        witness.attester_type = AttesterType.WITNESS.value
        envelope = make_envelope()
        attestation = envelope.sign(witness)

        assert attestation.claims == [{"claim_type": "validity", "claim_value": "witnessed"}]


class TestMemoryBlob:
    """Tests for blob sealing and integrity checks."""

    def test_encrypt_decrypt(self, codec):
        blob = MemoryBlob(content={"note": "likes tea"})
        restored = MemoryBlob.decrypt(blob.encrypt(codec), codec)

        assert restored.content == {"note": "likes tea"}
        assert restored.content_hash() == blob.content_hash()
        assert restored.content_type == "application/json"

    def test_text_content_type(self):
        assert MemoryBlob(content="plain").content_type == "text/plain"

    def test_null_content_rejected(self):
        with pytest.raises(RecordValidationError):
            MemoryBlob(content=None)

    def test_sealed_bytes_hold_no_plaintext(self, codec):
        sealed = MemoryBlob(content="my secret diary").encrypt(codec)

        assert b"secret diary" not in sealed

    def test_decrypt_garbage(self, codec):
        with pytest.raises(DecryptionError):
            MemoryBlob.decrypt(b"not json", codec)

    def test_fetch_blob_checks_hash(self, codec, local_store):
        """Test that content not matching the envelope hash is rejected."""
        blob = MemoryBlob(content="real")
        address = local_store.put(blob.encrypt(codec))
        good = make_envelope(content_address=address, content_hash=blob.content_hash())
        bad = make_envelope(content_address=address, content_hash=HASH)

        assert fetch_blob(local_store, codec, good).content == "real"
        with pytest.raises(ContentIntegrityError):
            fetch_blob(local_store, codec, bad)

    def test_fetch_blob_missing(self, codec, local_store):
        with pytest.raises(NotFoundError):
            fetch_blob(local_store, codec, make_envelope())

    @pytest.mark.parametrize("position", [0, -1])
    @pytest.mark.parametrize("field", ["nonce", "ciphertext"])
    def test_tampered_sealed_blob_raises(self, codec, local_store, field, position):
        """Test that a stored blob with one flipped sealed bit cannot be opened."""
        blob = MemoryBlob(content="do not touch")
        sealed = load_json_object(blob.encrypt(codec), "blob")
        raw = bytearray(base64.b64decode(sealed[field]))
        raw[position] ^= 0x01
        sealed[field] = base64.b64encode(bytes(raw)).decode("ascii")
        address = local_store.put(canonical_json(sealed))
        envelope = make_envelope(content_address=address, content_hash=blob.content_hash())

        with pytest.raises(DecryptionError):
            MemoryBlob.decrypt(local_store.get(address), codec)
        with pytest.raises(DecryptionError):
            fetch_blob(local_store, codec, envelope)

    def test_blob_altered_on_disk_fails_integrity(self, codec, local_store):
        """Test that bytes changed behind the store's back are caught on read."""
        blob = MemoryBlob(content="do not touch")
        address = local_store.put(blob.encrypt(codec))
        path = local_store.root / f"{address}.obj"
        data = bytearray(path.read_bytes())
        data[len(data) // 2] ^= 0x01
        path.write_bytes(bytes(data))
        envelope = make_envelope(content_address=address, content_hash=blob.content_hash())

        with pytest.raises(ContentIntegrityError):
            fetch_blob(local_store, codec, envelope)
