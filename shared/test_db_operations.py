"""Tests for database operations."""

import pytest
from datetime import datetime, timedelta

from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.models import DocumentRecord, TriageSettings


@pytest.fixture
def db_ops():
    """Create a test database operations instance with in-memory SQLite."""
    # Use in-memory SQLite for testing
    db = DatabaseOperations(database_url="sqlite:///:memory:")
    db.create_tables()
    return db


@pytest.fixture
def encryption_service():
    """Create an encryption service for testing."""
    return EncryptionService(encryption_key=EncryptionService.generate_key())


def make_record(readwise_id, **overrides):
    """Build a DocumentRecord with sensible defaults."""
    values = dict(
        readwise_id=readwise_id,
        url=f"https://read.readwise.io/read/{readwise_id}",
        source_url=f"https://example.com/{readwise_id}",
        title=f"Document {readwise_id}",
        author="Jane Author",
        summary=None,
        category="article",
        location="new",
        tags=[],
        site_name="example.com",
        word_count=1200,
        published_date=None,
        reading_progress=0.0,
        first_opened_at=None,
        last_opened_at=None,
        last_moved_at=None,
        parent_id=None,
        created_at=datetime(2024, 1, 1, 12, 0, 0),
        updated_at=datetime(2024, 1, 1, 12, 0, 0),
    )
    values.update(overrides)
    return DocumentRecord(**values)


def test_get_sync_state_missing(db_ops):
    """Test that no state exists before the first sync."""
    assert db_ops.get_sync_state() is None


def test_ensure_sync_state_creates_idle_row_once(db_ops):
    """Test ensure_sync_state creates the singleton row and keeps an existing one."""
    state = db_ops.ensure_sync_state()
    assert state.id == "main"
    assert state.status == "idle"
    assert state.total_synced == 0
    assert state.last_cursor is None

    db_ops.transition_sync_state(["idle"], status="syncing", last_cursor="abc")

    state = db_ops.ensure_sync_state()
    assert state.status == "syncing"
    assert state.last_cursor == "abc"


def test_transition_sync_state_compare_and_swap(db_ops):
    """Test a transition only applies when the current status is expected."""
    db_ops.ensure_sync_state()

    assert db_ops.transition_sync_state(["idle", "error"], status="syncing") is True
    # Second caller sees syncing and loses the race
    assert db_ops.transition_sync_state(["idle", "error"], status="syncing") is False

    assert db_ops.transition_sync_state(
        ["syncing"], status="error", error_msg="boom", last_cursor="C7"
    ) is True

    state = db_ops.get_sync_state()
    assert state.status == "error"
    assert state.error_msg == "boom"
    assert state.last_cursor == "C7"


def test_transition_without_row(db_ops):
    """Test a transition on a missing state row reports failure."""
    assert db_ops.transition_sync_state(["idle"], status="syncing") is False


def test_upsert_document_inserts_then_replaces(db_ops):
    """Test upsert is keyed on readwise_id and fully replaces the row."""
    db_ops.upsert_document(make_record("doc1", title="First", tags=["a"], word_count=100))
    db_ops.upsert_document(make_record("doc1", title="Second", tags=[], word_count=None))

    assert db_ops.count_documents() == 1
    doc = db_ops.get_document("doc1")
    assert doc.title == "Second"
    assert doc.tags == []
    # Fields absent upstream overwrite stale values
    assert doc.word_count is None


def test_upsert_same_batch_twice_is_idempotent(db_ops):
    """Test re-applying a page leaves the same rows."""
    batch = [make_record(f"doc{i}") for i in range(5)]
    for record in batch:
        db_ops.upsert_document(record)
    for record in batch:
        db_ops.upsert_document(record)

    assert db_ops.count_documents() == 5


def test_get_document_missing(db_ops):
    """Test get_document returns None for an unknown id."""
    assert db_ops.get_document("missing") is None


def test_reset_sync_deletes_documents_and_clears_state(db_ops):
    """Test reset returns to a blank idle state."""
    db_ops.ensure_sync_state()
    db_ops.transition_sync_state(
        ["idle"],
        status="error",
        last_cursor="C3",
        last_sync_at=datetime(2024, 1, 1),
        total_synced=2,
        error_msg="boom"
    )
    db_ops.upsert_document(make_record("doc1"))
    db_ops.upsert_document(make_record("doc2"))

    deleted = db_ops.reset_sync()

    assert deleted == 2
    assert db_ops.count_documents() == 0
    state = db_ops.get_sync_state()
    assert state.status == "idle"
    assert state.last_cursor is None
    assert state.last_sync_at is None
    assert state.total_synced == 0
    assert state.error_msg is None


def test_reset_sync_without_state_row(db_ops):
    """Test reset creates the idle state when none exists yet."""
    assert db_ops.reset_sync() == 0
    assert db_ops.get_sync_state().status == "idle"


def test_mark_documents_archived(db_ops):
    """Test the bulk archive update only touches the given documents."""
    for readwise_id in ["doc1", "doc2", "doc3"]:
        db_ops.upsert_document(make_record(readwise_id))
    moved_at = datetime(2024, 6, 1, 8, 30)

    updated = db_ops.mark_documents_archived(["doc1", "doc3"], moved_at=moved_at)

    assert updated == 2
    assert db_ops.get_document("doc1").location == "archive"
    assert db_ops.get_document("doc1").last_moved_at == moved_at
    assert db_ops.get_document("doc2").location == "new"
    assert db_ops.get_document("doc2").last_moved_at is None


def test_mark_documents_archived_empty(db_ops):
    """Test an empty id list is a no-op."""
    assert db_ops.mark_documents_archived([]) == 0


def test_find_stale_document_ids(db_ops):
    """Test stale selection requires unread, unstarted and older than the cutoff."""
    old = datetime(2023, 1, 1)
    recent = datetime(2024, 5, 1)
    db_ops.upsert_document(make_record("old_unread", created_at=old))
    db_ops.upsert_document(make_record("old_later", location="later", created_at=old + timedelta(days=1)))
    db_ops.upsert_document(make_record("old_started", created_at=old, reading_progress=0.4))
    db_ops.upsert_document(make_record("old_archived", created_at=old, location="archive"))
    db_ops.upsert_document(make_record("recent", created_at=recent))
    db_ops.upsert_document(make_record("old_rss", created_at=old, category="rss", site_name="news.com"))

    cutoff = datetime(2024, 1, 1)

    stale_ids = db_ops.find_stale_document_ids(cutoff)
    assert set(stale_ids) == {"old_unread", "old_rss", "old_later"}
    # Oldest first
    assert stale_ids[-1] == "old_later"
    assert db_ops.find_stale_document_ids(cutoff, categories=["rss"]) == ["old_rss"]
    assert set(db_ops.find_stale_document_ids(cutoff, site_names=["example.com"])) == {
        "old_unread", "old_later"
    }


def test_find_unread_document_ids_by_site(db_ops):
    """Test site selection ignores archived documents and other sites."""
    db_ops.upsert_document(make_record("a", site_name="blog.com"))
    db_ops.upsert_document(make_record("b", site_name="blog.com", location="shortlist"))
    db_ops.upsert_document(make_record("c", site_name="blog.com", location="archive"))
    db_ops.upsert_document(make_record("d", site_name="other.com"))

    assert set(db_ops.find_unread_document_ids_by_site("blog.com")) == {"a", "b"}


def test_store_and_get_api_token(db_ops, encryption_service):
    """Test the API token is stored encrypted and decrypted on read."""
    db_ops.store_api_token("rw_token_123", encryption_service)

    settings = db_ops.get_settings()
    assert settings.api_token != "rw_token_123"
    assert db_ops.get_api_token(encryption_service) == "rw_token_123"

    db_ops.store_api_token("rw_token_456", encryption_service)
    assert db_ops.get_api_token(encryption_service) == "rw_token_456"


def test_get_api_token_missing(db_ops, encryption_service):
    """Test no token yields None."""
    assert db_ops.get_api_token(encryption_service) is None


def test_get_api_token_with_wrong_key(db_ops, encryption_service):
    """Test a token encrypted with another key cannot be read."""
    db_ops.store_api_token("rw_token_123", encryption_service)
    other_service = EncryptionService(encryption_key=EncryptionService.generate_key())

    with pytest.raises(ValueError):
        db_ops.get_api_token(other_service)


def test_delete_api_token(db_ops, encryption_service):
    """Test deleting the token."""
    assert db_ops.delete_api_token() is False

    db_ops.store_api_token("rw_token_123", encryption_service)
    assert db_ops.delete_api_token() is True
    assert db_ops.get_api_token(encryption_service) is None
    assert db_ops.delete_api_token() is False


def test_triage_settings_defaults_and_save(db_ops, monkeypatch):
    """Test thresholds fall back to defaults until saved."""
    monkeypatch.delenv("STALE_NEWS_THRESHOLD", raising=False)
    monkeypatch.delenv("STALE_ARTICLE_THRESHOLD", raising=False)
    monkeypatch.delenv("STALE_DEFAULT_THRESHOLD", raising=False)

    assert db_ops.get_triage_settings() == TriageSettings(30, 90, 180)

    saved = db_ops.save_triage_settings(TriageSettings(7, 14, 60))
    assert saved == TriageSettings(7, 14, 60)
    assert db_ops.get_triage_settings() == TriageSettings(7, 14, 60)


def test_triage_settings_survive_token_changes(db_ops, encryption_service):
    """Test token and thresholds share the settings row without clobbering."""
    db_ops.save_triage_settings(TriageSettings(7, 14, 60))
    db_ops.store_api_token("rw_token_123", encryption_service)
    db_ops.delete_api_token()

    assert db_ops.get_triage_settings() == TriageSettings(7, 14, 60)


def test_sync_logs_newest_first(db_ops):
    """Test adding and retrieving sync logs."""
    db_ops.add_sync_log("INFO", "Sync started")
    db_ops.add_sync_log("ERROR", "Sync failed", cursor="C7")

    logs = db_ops.get_sync_logs(limit=10)
    assert [log.message for log in logs] == ["Sync failed", "Sync started"]
    assert logs[0].level == "ERROR"
    assert logs[0].cursor == "C7"
    assert logs[0].created_at is not None

    assert len(db_ops.get_sync_logs(limit=1)) == 1
