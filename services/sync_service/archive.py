"""Best-effort batch archiving pushed to Readwise, then reconciled locally."""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.exceptions import ConfigurationError, UpstreamError
from shared.models import ArchiveFailed, ArchiveResult, ArchiveSucceeded, utcnow
from services.readwise_client.client import ReadwiseClient, ReadwiseClientCache

logger = logging.getLogger(__name__)


class BatchArchiveExecutor:
    """Archives documents one by one through a shared, rate-limited client."""

    def __init__(
        self,
        db_ops: DatabaseOperations,
        client: ReadwiseClient,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db_ops = db_ops
        self.client = client
        self._clock = clock

    async def archive(
        self,
        readwise_ids: List[str],
        on_progress: Optional[Callable[[int, int], None]] = None
    ) -> ArchiveResult:
        """
        Archive documents upstream, then mark the successful ones locally.

        Calls are sequential; any failure is recorded for its document and
        the batch moves on. Only documents Readwise accepted are moved to the
        archive location in local storage, in one bulk update at the end.

        Args:
            readwise_ids: Upstream IDs to archive (duplicates are ignored)
            on_progress: Optional callback receiving (done, total)

        Returns:
            ArchiveResult with one outcome per document
        """
        ids = list(dict.fromkeys(readwise_ids))
        result = ArchiveResult()

        for index, readwise_id in enumerate(ids, start=1):
            try:
                await self.client.archive_document(readwise_id)
                result.outcomes.append(ArchiveSucceeded(readwise_id=readwise_id))
            except UpstreamError as e:
                logger.warning(f"Failed to archive document {readwise_id}: {e}")
                result.outcomes.append(ArchiveFailed(readwise_id=readwise_id, error=str(e)))
            except Exception as e:
                logger.error(f"Unexpected error archiving document {readwise_id}: {e}", exc_info=True)
                result.outcomes.append(ArchiveFailed(readwise_id=readwise_id, error=str(e)))

            if on_progress:
                on_progress(index, len(ids))

        if result.succeeded_ids:
            self.db_ops.mark_documents_archived(result.succeeded_ids, moved_at=self._clock())

        logger.info(f"Archive batch finished: {result.success} archived, {result.failed} failed")
        return result


class ArchiveService:
    """Selection-based and criteria-based archive actions."""

    def __init__(
        self,
        db_ops: DatabaseOperations,
        encryption_service: EncryptionService,
        client_cache: Optional[ReadwiseClientCache] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db_ops = db_ops
        self.encryption_service = encryption_service
        self.client_cache = client_cache or ReadwiseClientCache()
        self._clock = clock

    async def archive_documents(self, readwise_ids: List[str]) -> ArchiveResult:
        """
        Archive an explicit selection of documents.

        Raises:
            ConfigurationError: If no API token is configured
        """
        if not readwise_ids:
            return ArchiveResult()

        try:
            token = self.db_ops.get_api_token(self.encryption_service)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        if not token:
            raise ConfigurationError("No API token configured")

        client = await self.client_cache.get(token)
        executor = BatchArchiveExecutor(self.db_ops, client, clock=self._clock)
        return await executor.archive(readwise_ids)

    async def archive_stale_documents(
        self,
        older_than_days: int,
        categories: Optional[List[str]] = None,
        site_names: Optional[List[str]] = None
    ) -> ArchiveResult:
        """Archive unread, unstarted documents older than a threshold."""
        cutoff = self._clock() - timedelta(days=older_than_days)
        readwise_ids = self.db_ops.find_stale_document_ids(
            created_before=cutoff,
            categories=categories,
            site_names=site_names
        )
        logger.info(f"Archiving {len(readwise_ids)} documents older than {older_than_days} days")
        return await self.archive_documents(readwise_ids)

    async def archive_documents_from_source(self, site_name: str) -> ArchiveResult:
        """Archive every unread document saved from one site."""
        readwise_ids = self.db_ops.find_unread_document_ids_by_site(site_name)
        logger.info(f"Archiving {len(readwise_ids)} unread documents from {site_name}")
        return await self.archive_documents(readwise_ids)
