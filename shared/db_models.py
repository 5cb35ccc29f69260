"""SQLAlchemy database models for the Readwise dashboard."""

from sqlalchemy import (
    Column, String, Integer, Float, Text, DateTime, JSON, Index
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func


Base = declarative_base()

# Primary key of the singleton rows
SINGLETON_ID = 'main'


class SyncState(Base):
    """Model for sync_state table (one row per deployment)."""
    __tablename__ = 'sync_state'

    id = Column(String(20), primary_key=True, default=SINGLETON_ID)
    status = Column(String(20), nullable=False, default='idle')
    last_cursor = Column(Text, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    total_synced = Column(Integer, nullable=False, default=0)
    error_msg = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())


class Document(Base):
    """Model for documents table, keyed by the upstream Readwise id."""
    __tablename__ = 'documents'

    id = Column(Integer, primary_key=True, autoincrement=True)
    readwise_id = Column(String(64), nullable=False)
    url = Column(Text, nullable=True)
    source_url = Column(Text, nullable=True)
    title = Column(Text, nullable=True)
    author = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    category = Column(String(20), nullable=False)
    location = Column(String(20), nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    site_name = Column(String(255), nullable=True)
    word_count = Column(Integer, nullable=True)
    published_date = Column(DateTime, nullable=True)
    reading_progress = Column(Float, nullable=False, default=0.0)
    first_opened_at = Column(DateTime, nullable=True)
    last_opened_at = Column(DateTime, nullable=True)
    last_moved_at = Column(DateTime, nullable=True)
    parent_id = Column(String(64), nullable=True)
    # Mirrors of the upstream timestamps, not local insert time
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index('idx_documents_readwise_id', 'readwise_id', unique=True),
        Index('idx_documents_location', 'location'),
        Index('idx_documents_category', 'category'),
        Index('idx_documents_created_at', 'created_at'),
        Index('idx_documents_site_name', 'site_name'),
    )


class Settings(Base):
    """Model for settings table (one row per deployment)."""
    __tablename__ = 'settings'

    id = Column(String(20), primary_key=True, default=SINGLETON_ID)
    api_token = Column(Text, nullable=True)  # Encrypted
    stale_news_threshold = Column(Integer, nullable=False, default=30)
    stale_article_threshold = Column(Integer, nullable=False, default=90)
    stale_default_threshold = Column(Integer, nullable=False, default=180)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())


class SyncLog(Base):
    """Model for sync_logs table, an audit trail of sync state transitions."""
    __tablename__ = 'sync_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    level = Column(String(20), nullable=False)  # INFO, WARNING, ERROR
    message = Column(Text, nullable=False)
    cursor = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        Index('idx_sync_logs_created_at', 'created_at'),
    )
