"""Tests for the local filesystem content store."""

import pytest

from memledger.protocols import ContentIntegrityError, NotFoundError, supports_listing
from memledger.storage.local import LocalContentStore, local_address


class TestLocalContentStore:
    """Tests for put/get/list on the local backend."""

    def test_put_get(self, local_store):
        """Test that bytes come back from the address put returned."""
        address = local_store.put(b"sealed bytes")

        assert address == local_address(b"sealed bytes")
        assert address.startswith("local_")
        assert local_store.get(address) == b"sealed bytes"

    def test_put_is_idempotent(self, local_store):
        """Test that identical bytes map to one object."""
        first = local_store.put(b"same")
        second = local_store.put(b"same")

        assert first == second
        assert local_store.list() == [first]

    def test_unknown_address(self, local_store):
        """Test that a well-formed but absent address raises NotFoundError."""
        missing = local_address(b"never stored")

        with pytest.raises(NotFoundError) as exc_info:
            local_store.get(missing)
        assert exc_info.value.backend == "local"

    def test_malformed_address(self, local_store):
        """Test that addresses outside the local scheme are not found."""
        with pytest.raises(NotFoundError):
            local_store.get("../../etc/passwd")
        assert not local_store.exists("QmNotLocal")

    def test_tampered_object(self, local_store):
        """Test that modified bytes on disk fail the address check."""
        address = local_store.put(b"original")
        (local_store.root / f"{address}.obj").write_bytes(b"modified")

        with pytest.raises(ContentIntegrityError):
            local_store.get(address)

    def test_list_skips_temp_files(self, local_store):
        """Test that leftover temp files are not listed."""
        address = local_store.put(b"data")
        (local_store.root / ".local_abc.obj.tmp").write_bytes(b"partial")

        assert local_store.list() == [address]
        assert supports_listing(local_store)

    def test_delete(self, local_store):
        address = local_store.put(b"orphan")

        assert local_store.delete(address) is True
        assert local_store.delete(address) is False
        assert not local_store.exists(address)

    def test_root_created(self, tmp_path):
        store = LocalContentStore(tmp_path / "nested" / "store")

        assert store.root.is_dir()
