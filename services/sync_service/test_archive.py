"""Unit tests for batch archiving."""

from datetime import datetime
from unittest.mock import AsyncMock, Mock

import pytest

from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.exceptions import ConfigurationError, PermanentUpstreamError, TransientUpstreamError
from shared.models import DocumentRecord
from services.sync_service.archive import ArchiveService, BatchArchiveExecutor


NOW = datetime(2024, 6, 1, 12, 0, 0)


def make_record(readwise_id, **overrides):
    values = dict(
        readwise_id=readwise_id, url=None, source_url=None, title=readwise_id, author=None,
        summary=None, category="article", location="new", tags=[], site_name="example.com",
        word_count=None, published_date=None, reading_progress=0.0, first_opened_at=None,
        last_opened_at=None, last_moved_at=None, parent_id=None,
        created_at=datetime(2024, 1, 1), updated_at=datetime(2024, 1, 1),
    )
    values.update(overrides)
    return DocumentRecord(**values)


class FakeArchiveClient:
    """Archives everything except the configured rejections."""

    def __init__(self, rejections=None):
        self.rejections = rejections or {}
        self.archived = []

    async def archive_document(self, readwise_id):
        if readwise_id in self.rejections:
            raise self.rejections[readwise_id]
        self.archived.append(readwise_id)
        return {"id": readwise_id}


@pytest.fixture
def db_ops():
    db = DatabaseOperations(database_url="sqlite:///:memory:")
    db.create_tables()
    return db


@pytest.fixture
def encryption_service():
    return EncryptionService(encryption_key=EncryptionService.generate_key())


def make_service(db_ops, encryption_service, client):
    client_cache = Mock()
    client_cache.get = AsyncMock(return_value=client)
    return ArchiveService(db_ops, encryption_service, client_cache=client_cache, clock=lambda: NOW)


@pytest.mark.asyncio
async def test_partial_batch_archives_the_successful_subset(db_ops):
    """Test 10 ids with 2 upstream rejections archive 8 locally."""
    ids = [f"doc{i}" for i in range(10)]
    for readwise_id in ids:
        db_ops.upsert_document(make_record(readwise_id))

    client = FakeArchiveClient(rejections={
        "doc3": PermanentUpstreamError("Failed to update document: 404 Not Found", status_code=404),
        "doc7": TransientUpstreamError("Failed to update document: 500 Internal Server Error", status_code=500),
    })
    executor = BatchArchiveExecutor(db_ops, client, clock=lambda: NOW)
    progress = []

    result = await executor.archive(ids, on_progress=lambda done, total: progress.append((done, total)))

    assert result.to_dict() == {
        "success": 8,
        "failed": 2,
        "errors": [
            "doc3: Failed to update document: 404 Not Found",
            "doc7: Failed to update document: 500 Internal Server Error",
        ],
    }
    # Failures do not stop the batch
    assert client.archived == [i for i in ids if i not in ("doc3", "doc7")]
    assert progress[-1] == (10, 10)

    for readwise_id in ids:
        doc = db_ops.get_document(readwise_id)
        if readwise_id in ("doc3", "doc7"):
            assert doc.location == "new"
            assert doc.last_moved_at is None
        else:
            assert doc.location == "archive"
            assert doc.last_moved_at == NOW


@pytest.mark.asyncio
async def test_unexpected_client_error_does_not_lose_successes(db_ops):
    """Test a non-upstream error mid-batch is recorded and earlier successes are kept."""
    for readwise_id in ["a", "b", "c"]:
        db_ops.upsert_document(make_record(readwise_id))

    client = FakeArchiveClient(rejections={
        "b": RuntimeError("Cannot send a request, as the client has been closed"),
    })

    result = await BatchArchiveExecutor(db_ops, client, clock=lambda: NOW).archive(["a", "b", "c"])

    assert result.success == 2
    assert result.failed == 1
    assert result.to_dict()["errors"] == ["b: Cannot send a request, as the client has been closed"]
    assert client.archived == ["a", "c"]
    assert db_ops.get_document("a").location == "archive"
    assert db_ops.get_document("b").location == "new"
    assert db_ops.get_document("c").location == "archive"


@pytest.mark.asyncio
async def test_duplicate_ids_are_archived_once(db_ops):
    """Test each id is sent upstream once."""
    db_ops.upsert_document(make_record("doc1"))
    client = FakeArchiveClient()

    result = await BatchArchiveExecutor(db_ops, client).archive(["doc1", "doc1"])

    assert client.archived == ["doc1"]
    assert result.success == 1


@pytest.mark.asyncio
async def test_all_failures_leave_storage_untouched(db_ops):
    """Test no local update happens when nothing succeeded."""
    db_ops.upsert_document(make_record("doc1"))
    client = FakeArchiveClient(rejections={"doc1": PermanentUpstreamError("Failed", 400)})

    result = await BatchArchiveExecutor(db_ops, client).archive(["doc1"])

    assert result.success == 0
    assert result.failed == 1
    assert db_ops.get_document("doc1").location == "new"


@pytest.mark.asyncio
async def test_archive_requires_token(db_ops, encryption_service):
    """Test archiving without a token is a configuration error."""
    service = make_service(db_ops, encryption_service, FakeArchiveClient())

    with pytest.raises(ConfigurationError):
        await service.archive_documents(["doc1"])


@pytest.mark.asyncio
async def test_archive_empty_selection(db_ops, encryption_service):
    """Test an empty selection does nothing and needs no token."""
    service = make_service(db_ops, encryption_service, FakeArchiveClient())

    result = await service.archive_documents([])

    assert result.to_dict() == {"success": 0, "failed": 0, "errors": []}


@pytest.mark.asyncio
async def test_archive_stale_documents(db_ops, encryption_service):
    """Test criteria-based archiving selects old, unread, unstarted documents."""
    db_ops.store_api_token("rw_token", encryption_service)
    db_ops.upsert_document(make_record("old", created_at=datetime(2024, 1, 1)))
    db_ops.upsert_document(make_record("old_rss", category="rss", created_at=datetime(2024, 1, 1)))
    db_ops.upsert_document(make_record("old_started", created_at=datetime(2024, 1, 1), reading_progress=0.5))
    db_ops.upsert_document(make_record("fresh", created_at=datetime(2024, 5, 25)))
    client = FakeArchiveClient()
    service = make_service(db_ops, encryption_service, client)

    result = await service.archive_stale_documents(older_than_days=30, categories=["article"])

    assert client.archived == ["old"]
    assert result.success == 1
    assert db_ops.get_document("old").location == "archive"
    assert db_ops.get_document("old_rss").location == "new"


@pytest.mark.asyncio
async def test_archive_documents_from_source(db_ops, encryption_service):
    """Test archiving every unread document of one site."""
    db_ops.store_api_token("rw_token", encryption_service)
    db_ops.upsert_document(make_record("a", site_name="noisy.com"))
    db_ops.upsert_document(make_record("b", site_name="noisy.com", location="later"))
    db_ops.upsert_document(make_record("c", site_name="quiet.com"))
    client = FakeArchiveClient()
    service = make_service(db_ops, encryption_service, client)

    result = await service.archive_documents_from_source("noisy.com")

    assert sorted(client.archived) == ["a", "b"]
    assert result.success == 2
    assert db_ops.get_document("c").location == "new"
