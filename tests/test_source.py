"""Tests for the Firestore reader."""

import pytest
from google.api_core.exceptions import NotFound, PermissionDenied, ServiceUnavailable

from firestore_to_mongo.exceptions import SourceUnavailableError, TransientIOError
from firestore_to_mongo.source import FirestoreSource


@pytest.mark.unit
class TestPreflight:
    def test_ok(self, fake_firestore) -> None:
        FirestoreSource(fake_firestore).preflight("users")
        assert fake_firestore.stream_calls == ["users"]

    def test_permission_denied(self, fake_firestore, capsys) -> None:
        fake_firestore.fail("users", PermissionDenied("Missing or insufficient permissions."))
        with pytest.raises(SourceUnavailableError, match="refused access"):
            FirestoreSource(fake_firestore).preflight("users")
        err = capsys.readouterr().err
        assert "[FATAL] PermissionDenied on SOURCE (project=test-project)" in err
        assert "roles/datastore.viewer" in err

    def test_unreachable(self, fake_firestore) -> None:
        fake_firestore.fail("users", ServiceUnavailable("DNS resolution failed"))
        with pytest.raises(SourceUnavailableError, match="not reachable"):
            FirestoreSource(fake_firestore).preflight("users")


@pytest.mark.unit
class TestTopLevel:
    def test_reads_records(self, fake_firestore) -> None:
        records = FirestoreSource(fake_firestore).list_top_level("quotes")
        assert {r.document_id for r in records} == {"q1", "q2"}
        q1 = next(r for r in records if r.document_id == "q1")
        assert q1.path == "quotes/q1"
        assert q1.parent_path is None
        assert q1.fields == {"text": "first", "tags": ["a", "b"]}

    def test_missing_collection_is_empty(self, fake_firestore) -> None:
        assert FirestoreSource(fake_firestore).list_top_level("nothing_here") == []

    def test_transient_errors_are_retried(self, fake_firestore, no_sleep_retry) -> None:
        fake_firestore.fail("quotes", ServiceUnavailable("try again"))
        records = FirestoreSource(fake_firestore, no_sleep_retry).list_top_level("quotes")
        assert len(records) == 2
        assert fake_firestore.stream_calls == ["quotes", "quotes"]
        assert len(no_sleep_retry.delays) == 1

    def test_transient_errors_surface_when_exhausted(self, fake_firestore, no_sleep_retry) -> None:
        fake_firestore.fail("quotes", *[ServiceUnavailable("down")] * 3)
        with pytest.raises(TransientIOError):
            FirestoreSource(fake_firestore, no_sleep_retry).list_top_level("quotes")

    def test_permission_errors_are_not_retried(self, fake_firestore, no_sleep_retry) -> None:
        fake_firestore.fail("quotes", PermissionDenied("nope"))
        with pytest.raises(PermissionDenied):
            FirestoreSource(fake_firestore, no_sleep_retry).list_top_level("quotes")
        assert no_sleep_retry.delays == []


@pytest.mark.unit
class TestSubcollections:
    def test_reads_children(self, fake_firestore) -> None:
        records = FirestoreSource(fake_firestore).list_subcollection("users/uidABC", "bookmarks")
        assert sorted(r.path for r in records) == ["users/uidABC/bookmarks/bm1", "users/uidABC/bookmarks/bm2"]
        assert all(r.collection_name == "bookmarks" for r in records)

    def test_parent_without_children(self, fake_firestore) -> None:
        assert FirestoreSource(fake_firestore).list_subcollection("users/uid123", "bookmarks") == []

    @pytest.mark.parametrize("error", [PermissionDenied("denied"), NotFound("gone")])
    def test_unreadable_subcollection_is_empty(self, fake_firestore, caplog, error) -> None:
        fake_firestore.fail("users/uidABC/bookmarks", error)
        assert FirestoreSource(fake_firestore).list_subcollection("users/uidABC", "bookmarks") == []
        assert "users/uidABC/bookmarks" in caplog.text

    def test_exhausted_retries_are_empty(self, fake_firestore, no_sleep_retry, caplog) -> None:
        fake_firestore.fail("users/uidABC/bookmarks", *[ServiceUnavailable("down")] * 3)
        source = FirestoreSource(fake_firestore, no_sleep_retry)
        assert source.list_subcollection("users/uidABC", "bookmarks") == []
        assert "Giving up on users/uidABC/bookmarks" in caplog.text
