"""Resumable, cursor-based synchronization of the Readwise library."""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from shared.db_operations import DatabaseOperations
from shared.db_models import SyncState
from shared.encryption import EncryptionService
from shared.exceptions import ConfigurationError, SyncInProgressError
from shared.models import SyncProgress, SyncStatus, utcnow
from services.readwise_client.client import ReadwiseClientCache
from services.sync_service.notifications import NotificationService
from services.sync_service.transformer import transform_document

logger = logging.getLogger(__name__)

# Reported when a sync cycle reaches its terminal page; never persisted
COMPLETED = "completed"

NO_TOKEN_MESSAGE = "No API token configured. Please add your Readwise API token in settings."


class SyncEngine:
    """
    Drives the singleton sync cursor through idle, syncing and error.

    Every operation re-reads the persisted SyncState row and writes its
    transition with a compare-and-swap on the status column, so a stale
    caller can never overwrite a transition made by someone else.
    """

    def __init__(
        self,
        db_ops: DatabaseOperations,
        encryption_service: EncryptionService,
        client_cache: Optional[ReadwiseClientCache] = None,
        notification_service: Optional[NotificationService] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Initialize the sync engine.

        Args:
            db_ops: Database operations instance
            encryption_service: Encryption service for the stored API token
            client_cache: Shared Readwise client cache
            notification_service: Failure notifier
            clock: Source of "now" for lastSyncAt, injectable for tests
        """
        self.db_ops = db_ops
        self.encryption_service = encryption_service
        self.client_cache = client_cache or ReadwiseClientCache()
        self.notification_service = notification_service or NotificationService()
        self._clock = clock
        # In-process guard: at most one step at a time per engine
        self._step_lock = asyncio.Lock()

    def _get_token(self) -> Optional[str]:
        try:
            return self.db_ops.get_api_token(self.encryption_service)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    def get_state(self) -> Optional[SyncState]:
        """Read the persisted sync state without changing it."""
        return self.db_ops.get_sync_state()

    def get_progress(self, current_batch: int = 0) -> SyncProgress:
        """Describe the persisted state in the shape reported after every step."""
        state = self.db_ops.get_sync_state()
        if state is None:
            return SyncProgress(
                status=SyncStatus.IDLE.value,
                total_synced=0,
                current_batch=current_batch,
                has_more=False
            )

        return SyncProgress(
            status=state.status,
            total_synced=state.total_synced,
            current_batch=current_batch,
            has_more=state.status == SyncStatus.SYNCING.value,
            error=state.error_msg
        )

    async def start_sync(self) -> SyncProgress:
        """
        Begin a sync cycle at the start of the collection.

        Idempotent while a sync is running: the current progress is reported
        and nothing restarts. Starting from the error state discards the
        failed cursor; lastSyncAt is kept so the cycle stays incremental.

        Raises:
            ConfigurationError: If no API token is configured
        """
        if not self._get_token():
            raise ConfigurationError(NO_TOKEN_MESSAGE)

        self.db_ops.ensure_sync_state()
        started = self.db_ops.transition_sync_state(
            [SyncStatus.IDLE.value, SyncStatus.ERROR.value],
            status=SyncStatus.SYNCING.value,
            last_cursor=None,
            error_msg=None
        )

        if started:
            logger.info("Sync started")
            self.db_ops.add_sync_log('INFO', 'Sync started')
        else:
            logger.info("Sync already in progress, reporting current progress")

        return self.get_progress()

    async def advance(self) -> SyncProgress:
        """
        Fetch and apply exactly one page.

        Does nothing (and reports the current state) when the persisted
        status is not syncing or when another step of this engine is still
        running. Never raises for upstream or storage failures: those move
        the state to error, keeping the cursor of the failed page.
        """
        if self._step_lock.locked():
            logger.warning("A sync step is already running, reporting current progress")
            return self.get_progress()

        async with self._step_lock:
            return await self._advance()

    async def _advance(self) -> SyncProgress:
        state = self.db_ops.get_sync_state()
        if state is None or state.status != SyncStatus.SYNCING.value:
            return self.get_progress()

        cursor = state.last_cursor
        # The lower bound only applies to the first page of a cycle
        updated_after = state.last_sync_at if cursor is None else None

        try:
            token = self._get_token()
            if not token:
                raise ConfigurationError(NO_TOKEN_MESSAGE)

            client = await self.client_cache.get(token)
            page = await client.fetch_page(cursor=cursor, updated_after=updated_after)

            documents = [transform_document(doc) for doc in page.results]
            for document in documents:
                self.db_ops.upsert_document(document)

            total = self.db_ops.count_documents()
        except Exception as e:
            logger.error(f"Sync step failed at cursor {cursor or 'start'}: {e}", exc_info=True)
            return await self._fail(e, cursor)

        # An empty page ends the cycle even if it carries a cursor
        has_more = bool(page.next_cursor) and len(documents) > 0

        if has_more:
            values = {
                'status': SyncStatus.SYNCING.value,
                'last_cursor': page.next_cursor,
                'total_synced': total,
                'error_msg': None
            }
        else:
            values = {
                'status': SyncStatus.IDLE.value,
                'last_cursor': None,
                'last_sync_at': self._clock(),
                'total_synced': total,
                'error_msg': None
            }

        if not self.db_ops.transition_sync_state([SyncStatus.SYNCING.value], **values):
            logger.warning("Sync state changed while a page was being applied, not advancing")
            return self.get_progress(current_batch=len(documents))

        logger.info(
            f"Synced page of {len(documents)} documents (total {total}, has_more={has_more})"
        )

        if not has_more:
            logger.info(f"Sync completed with {total} documents stored")
            self.db_ops.add_sync_log('INFO', f'Sync completed: {total} documents stored')

        return SyncProgress(
            status=SyncStatus.SYNCING.value if has_more else COMPLETED,
            total_synced=total,
            current_batch=len(documents),
            has_more=has_more
        )

    async def _fail(self, error: Exception, cursor: Optional[str]) -> SyncProgress:
        """Move a failed step to the error state, keeping its cursor."""
        location = f"{cursor[:20]}..." if cursor else "start"
        error_msg = f"{error} (at cursor: {location})"

        # The row must leave syncing even if storage is failing, so the
        # recount happens only after the error transition is written.
        self.db_ops.transition_sync_state(
            [SyncStatus.SYNCING.value],
            status=SyncStatus.ERROR.value,
            error_msg=error_msg
        )

        try:
            total = self.db_ops.count_documents()
            self.db_ops.transition_sync_state(
                [SyncStatus.ERROR.value],
                total_synced=total
            )
            self.db_ops.add_sync_log('ERROR', f'Sync failed: {error_msg}', cursor=cursor)
        except Exception as e:
            logger.error(f"Failed to record sync failure details: {e}")
            state = self.db_ops.get_sync_state()
            total = state.total_synced if state else 0

        await self.notification_service.send_sync_error_notification(
            error_message=error_msg,
            cursor=cursor,
            context={"error_type": type(error).__name__}
        )

        return SyncProgress(
            status=SyncStatus.ERROR.value,
            total_synced=total,
            current_batch=0,
            has_more=False,
            error=error_msg
        )

    def retry_from_same_point(self) -> SyncProgress:
        """Clear the error and resume syncing at the retained cursor."""
        resumed = self.db_ops.transition_sync_state(
            [SyncStatus.ERROR.value],
            status=SyncStatus.SYNCING.value,
            error_msg=None
        )

        if resumed:
            state = self.db_ops.get_sync_state()
            logger.info(f"Retrying sync at cursor {state.last_cursor or 'start'}")
            self.db_ops.add_sync_log('INFO', 'Retrying from the same cursor', cursor=state.last_cursor)
        else:
            logger.info("Retry requested but sync is not in the error state")

        return self.get_progress()

    def skip_problematic_cursor(self) -> SyncProgress:
        """
        Abandon the failed cursor and move the incremental lower bound to now.

        Documents behind the abandoned cursor are only picked up again if
        they are updated upstream after this point.
        """
        state = self.db_ops.get_sync_state()
        skipped_cursor = state.last_cursor if state else None

        skipped = self.db_ops.transition_sync_state(
            [SyncStatus.ERROR.value],
            status=SyncStatus.IDLE.value,
            last_cursor=None,
            last_sync_at=self._clock(),
            total_synced=self.db_ops.count_documents(),
            error_msg=None
        )

        if skipped:
            logger.warning(f"Skipped problematic cursor {skipped_cursor or 'start'}")
            self.db_ops.add_sync_log('WARNING', 'Skipped problematic cursor', cursor=skipped_cursor)
        else:
            logger.info("Skip requested but sync is not in the error state")

        return self.get_progress()

    def reset(self) -> SyncProgress:
        """Return to a blank idle state and delete every synced document."""
        deleted = self.db_ops.reset_sync()
        logger.warning(f"Sync reset, {deleted} documents deleted")
        self.db_ops.add_sync_log('WARNING', f'Sync reset: {deleted} documents deleted')
        return self.get_progress()

    async def run_to_completion(self) -> Dict:
        """
        Run a whole sync cycle in one call (scheduled entry point).

        Returns:
            Dictionary with the final status and what was fetched

        Raises:
            ConfigurationError: If no API token is configured
            SyncInProgressError: If a sync is already running
        """
        if not self._get_token():
            raise ConfigurationError(NO_TOKEN_MESSAGE)

        self.db_ops.ensure_sync_state()
        started = self.db_ops.transition_sync_state(
            [SyncStatus.IDLE.value, SyncStatus.ERROR.value],
            status=SyncStatus.SYNCING.value,
            last_cursor=None,
            error_msg=None
        )
        if not started:
            raise SyncInProgressError("Sync already in progress")

        logger.info("Scheduled sync started")
        self.db_ops.add_sync_log('INFO', 'Scheduled sync started')

        pages = 0
        fetched = 0
        while True:
            async with self._step_lock:
                progress = await self._advance()

            pages += 1
            fetched += progress.current_batch

            if progress.status != SyncStatus.SYNCING.value:
                break

        return {
            "status": progress.status,
            "pages": pages,
            "documents_fetched": fetched,
            "total_synced": progress.total_synced,
            "error": progress.error
        }

    async def aclose(self) -> None:
        """Release the cached upstream client."""
        await self.client_cache.aclose()
