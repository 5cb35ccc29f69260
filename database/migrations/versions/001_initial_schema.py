"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Singleton sync state row, id is always 'main'
    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_state (
            id VARCHAR(20) PRIMARY KEY DEFAULT 'main',
            status VARCHAR(20) NOT NULL DEFAULT 'idle',
            last_cursor TEXT,
            last_sync_at TIMESTAMP,
            total_synced INTEGER NOT NULL DEFAULT 0,
            error_msg TEXT,
            updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
            CHECK (status IN ('idle', 'syncing', 'error'))
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS documents (
            id SERIAL PRIMARY KEY,
            readwise_id VARCHAR(64) NOT NULL,
            url TEXT,
            source_url TEXT,
            title TEXT,
            author TEXT,
            summary TEXT,
            category VARCHAR(20) NOT NULL,
            location VARCHAR(20),
            tags JSON NOT NULL DEFAULT '[]',
            site_name VARCHAR(255),
            word_count INTEGER,
            published_date TIMESTAMP,
            reading_progress DOUBLE PRECISION NOT NULL DEFAULT 0,
            first_opened_at TIMESTAMP,
            last_opened_at TIMESTAMP,
            last_moved_at TIMESTAMP,
            parent_id VARCHAR(64),
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            CHECK (reading_progress >= 0 AND reading_progress <= 1)
        )
    """)

    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_documents_readwise_id
        ON documents(readwise_id)
    """)

    op.execute("CREATE INDEX IF NOT EXISTS idx_documents_location ON documents(location)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_documents_category ON documents(category)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_documents_created_at ON documents(created_at)")
    op.execute("CREATE INDEX IF NOT EXISTS idx_documents_site_name ON documents(site_name)")

    # Singleton settings row; api_token holds Fernet ciphertext
    op.execute("""
        CREATE TABLE IF NOT EXISTS settings (
            id VARCHAR(20) PRIMARY KEY DEFAULT 'main',
            api_token TEXT,
            stale_news_threshold INTEGER NOT NULL DEFAULT 30,
            stale_article_threshold INTEGER NOT NULL DEFAULT 90,
            stale_default_threshold INTEGER NOT NULL DEFAULT 180,
            updated_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_logs (
            id SERIAL PRIMARY KEY,
            level VARCHAR(20) NOT NULL,
            message TEXT NOT NULL,
            cursor TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_sync_logs_created_at
        ON sync_logs(created_at DESC)
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS sync_logs CASCADE")
    op.execute("DROP TABLE IF EXISTS settings CASCADE")
    op.execute("DROP TABLE IF EXISTS documents CASCADE")
    op.execute("DROP TABLE IF EXISTS sync_state CASCADE")
