"""Database operations for the Readwise dashboard."""

from dataclasses import asdict
from datetime import datetime
from typing import Iterable, List, Optional
from sqlalchemy import create_engine, select, func
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from shared.db_models import Base, SyncState, Document, Settings, SyncLog, SINGLETON_ID
from shared.config import get_database_url, get_stale_threshold_defaults
from shared.models import DocumentRecord, SyncStatus, TriageSettings, UNREAD_LOCATIONS, utcnow


class DatabaseOperations:
    """Handles all database operations for the dashboard."""

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or get_database_url()
        self.engine = create_engine(self.database_url, pool_pre_ping=True)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self):
        """Create all tables in the database."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    def _insert(self, model):
        if self.engine.dialect.name == 'postgresql':
            return pg_insert(model)
        return sqlite_insert(model)

    # Sync State Operations

    def get_sync_state(self) -> Optional[SyncState]:
        """
        Get the singleton sync state record.

        Returns:
            SyncState record or None if no sync was ever attempted
        """
        with self.get_session() as session:
            return session.get(SyncState, SINGLETON_ID)

    def ensure_sync_state(self) -> SyncState:
        """
        Get the singleton sync state record, creating an idle one if missing.

        Returns:
            The existing or newly created SyncState record
        """
        with self.get_session() as session:
            stmt = self._insert(SyncState).values(
                id=SINGLETON_ID,
                status=SyncStatus.IDLE.value,
                total_synced=0
            ).on_conflict_do_nothing(index_elements=['id'])
            session.execute(stmt)
            session.commit()
            return session.get(SyncState, SINGLETON_ID)

    def transition_sync_state(
        self,
        expected_statuses: Iterable[str],
        **values
    ) -> bool:
        """
        Conditionally update the sync state (compare-and-swap on status).

        Args:
            expected_statuses: Statuses the row must currently have
            **values: Column values to write when the row matches

        Returns:
            True if the row was in an expected status and was updated
        """
        with self.get_session() as session:
            updated = session.query(SyncState).filter(
                SyncState.id == SINGLETON_ID,
                SyncState.status.in_(list(expected_statuses))
            ).update(values, synchronize_session=False)
            session.commit()
            return updated == 1

    def reset_sync(self) -> int:
        """
        Reset the sync state to idle and delete every synced document.

        Returns:
            Number of documents deleted
        """
        with self.get_session() as session:
            stmt = self._insert(SyncState).values(
                id=SINGLETON_ID,
                status=SyncStatus.IDLE.value,
                total_synced=0
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=['id'],
                set_={
                    'status': SyncStatus.IDLE.value,
                    'last_cursor': None,
                    'last_sync_at': None,
                    'total_synced': 0,
                    'error_msg': None,
                    'updated_at': utcnow()
                }
            )
            session.execute(stmt)
            deleted = session.query(Document).delete(synchronize_session=False)
            session.commit()
            return deleted

    # Document Operations

    def upsert_document(self, record: DocumentRecord) -> None:
        """
        Insert a document or fully replace the stored one with the same readwise_id.

        Args:
            record: The transformed document
        """
        values = asdict(record)
        with self.get_session() as session:
            stmt = self._insert(Document).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=['readwise_id'],
                set_={
                    key: stmt.excluded[key]
                    for key in values
                    if key != 'readwise_id'
                }
            )
            session.execute(stmt)
            session.commit()

    def get_document(self, readwise_id: str) -> Optional[Document]:
        """
        Get a document by its upstream id.

        Args:
            readwise_id: The Readwise document ID

        Returns:
            Document record or None if not found
        """
        with self.get_session() as session:
            stmt = select(Document).where(Document.readwise_id == readwise_id)
            return session.execute(stmt).scalar_one_or_none()

    def count_documents(self) -> int:
        """Count the documents currently stored."""
        with self.get_session() as session:
            return session.execute(select(func.count(Document.id))).scalar() or 0

    def mark_documents_archived(
        self,
        readwise_ids: List[str],
        moved_at: Optional[datetime] = None
    ) -> int:
        """
        Move documents to the archive location in one bulk update.

        Args:
            readwise_ids: Upstream IDs of the documents to update
            moved_at: Timestamp to store as last_moved_at (defaults to now)

        Returns:
            Number of documents updated
        """
        if not readwise_ids:
            return 0

        with self.get_session() as session:
            updated = session.query(Document).filter(
                Document.readwise_id.in_(readwise_ids)
            ).update(
                {
                    'location': 'archive',
                    'last_moved_at': moved_at or utcnow()
                },
                synchronize_session=False
            )
            session.commit()
            return updated

    def find_stale_document_ids(
        self,
        created_before: datetime,
        categories: Optional[List[str]] = None,
        site_names: Optional[List[str]] = None
    ) -> List[str]:
        """
        Find unread, unstarted documents created before a cutoff.

        Args:
            created_before: Upper bound (exclusive) on created_at
            categories: Optional category filter
            site_names: Optional site name filter

        Returns:
            List of Readwise IDs, oldest first
        """
        with self.get_session() as session:
            stmt = select(Document.readwise_id).where(
                Document.location.in_(UNREAD_LOCATIONS),
                Document.created_at < created_before,
                Document.reading_progress == 0
            )
            if categories:
                stmt = stmt.where(Document.category.in_(categories))
            if site_names:
                stmt = stmt.where(Document.site_name.in_(site_names))

            stmt = stmt.order_by(Document.created_at.asc())
            return list(session.execute(stmt).scalars().all())

    def find_unread_document_ids_by_site(self, site_name: str) -> List[str]:
        """
        Find unread documents saved from one site.

        Args:
            site_name: The site name to match exactly

        Returns:
            List of Readwise IDs
        """
        with self.get_session() as session:
            stmt = select(Document.readwise_id).where(
                Document.site_name == site_name,
                Document.location.in_(UNREAD_LOCATIONS)
            )
            return list(session.execute(stmt).scalars().all())

    # Settings Operations

    def get_settings(self) -> Optional[Settings]:
        """Get the singleton settings record, if any."""
        with self.get_session() as session:
            return session.get(Settings, SINGLETON_ID)

    def store_api_token(
        self,
        api_token: str,
        encryption_service: 'EncryptionService'
    ) -> Settings:
        """
        Store or replace the Readwise API token with encryption.

        Args:
            api_token: Readwise API token (will be encrypted)
            encryption_service: Encryption service for encrypting the token

        Returns:
            The created or updated Settings record
        """
        with self.get_session() as session:
            encrypted_token = encryption_service.encrypt(api_token)

            settings = session.get(Settings, SINGLETON_ID)

            if settings:
                settings.api_token = encrypted_token
                settings.updated_at = utcnow()
            else:
                settings = Settings(id=SINGLETON_ID, api_token=encrypted_token)
                session.add(settings)

            session.commit()
            session.refresh(settings)
            return settings

    def get_api_token(
        self,
        encryption_service: 'EncryptionService'
    ) -> Optional[str]:
        """
        Retrieve and decrypt the Readwise API token.

        Args:
            encryption_service: Encryption service for decrypting the token

        Returns:
            The plaintext token or None if not configured
        """
        settings = self.get_settings()
        if not settings or not settings.api_token:
            return None
        return encryption_service.decrypt(settings.api_token)

    def delete_api_token(self) -> bool:
        """
        Remove the stored Readwise API token.

        Returns:
            True if a token was removed, False if none was stored
        """
        with self.get_session() as session:
            settings = session.get(Settings, SINGLETON_ID)

            if settings and settings.api_token:
                settings.api_token = None
                session.commit()
                return True

            return False

    def get_triage_settings(self) -> TriageSettings:
        """Get stale thresholds, falling back to configured defaults."""
        defaults = get_stale_threshold_defaults()
        settings = self.get_settings()
        if not settings:
            return TriageSettings(**defaults)

        return TriageSettings(
            stale_news_threshold=settings.stale_news_threshold or defaults['stale_news_threshold'],
            stale_article_threshold=settings.stale_article_threshold or defaults['stale_article_threshold'],
            stale_default_threshold=settings.stale_default_threshold or defaults['stale_default_threshold']
        )

    def save_triage_settings(self, triage_settings: TriageSettings) -> TriageSettings:
        """Store stale thresholds."""
        with self.get_session() as session:
            settings = session.get(Settings, SINGLETON_ID)
            if not settings:
                settings = Settings(id=SINGLETON_ID)
                session.add(settings)

            settings.stale_news_threshold = triage_settings.stale_news_threshold
            settings.stale_article_threshold = triage_settings.stale_article_threshold
            settings.stale_default_threshold = triage_settings.stale_default_threshold
            session.commit()

        return self.get_triage_settings()

    # Sync Log Operations

    def add_sync_log(
        self,
        level: str,
        message: str,
        cursor: Optional[str] = None
    ) -> SyncLog:
        """
        Add an audit entry for a sync state transition.

        Args:
            level: Log level (INFO, WARNING, ERROR)
            message: Log message
            cursor: Optional cursor in effect when the entry was written

        Returns:
            The created SyncLog record
        """
        with self.get_session() as session:
            sync_log = SyncLog(
                level=level,
                message=message,
                cursor=cursor
            )
            session.add(sync_log)
            session.commit()
            session.refresh(sync_log)
            return sync_log

    def get_sync_logs(self, limit: int = 100) -> List[SyncLog]:
        """
        Get the most recent sync log entries, newest first.

        Args:
            limit: Maximum number of logs to return

        Returns:
            List of SyncLog records
        """
        with self.get_session() as session:
            stmt = select(SyncLog).order_by(
                SyncLog.created_at.desc(),
                SyncLog.id.desc()
            ).limit(limit)

            result = session.execute(stmt)
            return list(result.scalars().all())
