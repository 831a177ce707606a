"""Tests for AccessPolicy checks, mutation, redaction and signing."""

from datetime import datetime, timedelta, timezone

import pytest

from memledger.protocols import PolicyDenied, RecordValidationError
from memledger.records.policy import AccessPolicy, PolicyConstraints
from memledger.types import AccessLevel

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


class TestPermissions:
    """Tests for permission lookups."""

    def test_owner_always_allowed(self):
        policy = AccessPolicy(owner_id="owner")

        assert policy.has_permission("owner", "read")
        assert policy.has_permission("owner", "share")
        assert not policy.has_permission("stranger", "read")

    def test_shared_policy(self):
        policy = AccessPolicy.create_shared("owner", ["friend"], ["read", "derive"])

        assert policy.has_permission("friend", "read")
        assert policy.has_permission("friend", "derive")
        assert not policy.has_permission("friend", "write")
        assert "friend" in policy.principals

    def test_wildcard(self):
        policy = AccessPolicy(owner_id="owner").grant("*", "read")

        assert policy.has_permission("anyone", "read")
        assert "*" not in policy.principals

    def test_revoke(self):
        policy = AccessPolicy.create_shared("owner", ["friend"])
        policy.revoke("friend", "read")

        assert not policy.has_permission("friend", "read")

    def test_revoke_all(self):
        policy = AccessPolicy.create_shared("owner", ["friend"], ["read", "write"])
        policy.revoke_all("friend")

        assert not policy.has_permission("friend", "write")
        assert "friend" not in policy.principals

    def test_unknown_permission(self):
        with pytest.raises(ValueError):
            AccessPolicy(owner_id="owner").grant("friend", "delete")

    def test_unknown_permission_key_rejected(self):
        with pytest.raises(RecordValidationError):
            AccessPolicy(owner_id="owner", permissions={"delete": []})


class TestAccessLevel:
    """Tests for the ordered access check."""

    def test_expired_policy_denies_listed_principal(self):
        """Test that the validity window is checked before permissions."""
        policy = AccessPolicy.create_shared("owner", ["friend"])
        policy.set_time_constraints(None, (NOW - timedelta(days=1)).isoformat())

        assert policy.access_level("friend", "chat", NOW) == AccessLevel.DENIED
        assert policy.access_level("owner", "chat", NOW) == AccessLevel.DENIED

    def test_not_yet_active(self):
        policy = AccessPolicy(owner_id="owner")
        policy.set_time_constraints((NOW + timedelta(days=1)).isoformat(), None)

        assert policy.is_valid(NOW) == (False, "Policy not yet active")

    def test_denied_intent(self):
        policy = AccessPolicy.create_shared("owner", ["friend"])
        policy.constraints = PolicyConstraints(denied_intents=["marketing"])

        assert policy.access_level("friend", "Marketing campaign", NOW) == AccessLevel.DENIED
        assert policy.access_level("friend", "support", NOW) == AccessLevel.FULL

    def test_allowed_intents(self):
        policy = AccessPolicy.create_shared("owner", ["friend"])
        policy.constraints = PolicyConstraints(allowed_intents=["support"])

        assert policy.access_level("friend", "customer support", NOW) == AccessLevel.FULL
        assert policy.access_level("friend", "sales", NOW) == AccessLevel.DENIED

    def test_redaction_applies_to_non_owner(self):
        policy = AccessPolicy.create_shared("owner", ["friend"]).enable_redaction(["email"])

        assert policy.access_level("friend", "chat", NOW) == AccessLevel.REDACTED
        assert policy.access_level("owner", "chat", NOW) == AccessLevel.FULL

    def test_require_access_raises_on_denial(self):
        policy = AccessPolicy.create_shared("owner", ["friend"])

        assert policy.require_access("friend", "chat", NOW) == AccessLevel.FULL
        with pytest.raises(PolicyDenied):
            policy.require_access("stranger", "chat", NOW)

    def test_invalid_window(self):
        with pytest.raises(RecordValidationError):
            PolicyConstraints(
                valid_from=NOW.isoformat(), valid_until=(NOW - timedelta(days=1)).isoformat()
            )


class TestRedaction:
    def test_object_fields(self):
        """Test that listed fields are replaced and the original kept."""
        policy = AccessPolicy(owner_id="o").enable_redaction(["email"], pattern="***")
        content = {"name": "Ada", "email": "ada@example.com"}

        redacted = policy.apply_redaction(content)

        assert redacted == {"name": "Ada", "email": "***"}
        assert content["email"] == "ada@example.com"

    def test_string_content(self):
        policy = AccessPolicy(owner_id="o").enable_redaction(["content"])

        assert policy.apply_redaction("secret text") == "[REDACTED]"

    def test_disabled(self):
        assert AccessPolicy(owner_id="o").apply_redaction({"a": 1}) == {"a": 1}


class TestPolicySigning:
    def test_sign_verify_and_tamper(self, identity):
        """Test that a signed policy stops verifying after a grant."""
        policy = AccessPolicy.create_default(identity.attester_id)
        policy.sign(identity)

        assert policy.verify({identity.attester_id: identity.public_key}).valid

        policy.grant("intruder", "read")
        assert not policy.verify({identity.attester_id: identity.public_key}).valid

    def test_round_trip(self, identity):
        policy = AccessPolicy.create_shared("owner", ["friend"]).enable_redaction(["email"])
        policy.sign(identity)

        restored = AccessPolicy.from_dict(policy.to_dict())

        assert restored.to_dict() == policy.to_dict()
        assert restored.verify().valid
