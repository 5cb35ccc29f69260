"""Unit tests for dashboard and triage analytics."""

from datetime import datetime, timedelta

import pytest

from shared.db_operations import DatabaseOperations
from shared.models import DocumentRecord, TriageSettings
from services.dashboard_api.analytics import AnalyticsService


NOW = datetime(2024, 6, 1, 12, 0, 0)


def days_ago(days):
    return NOW - timedelta(days=days)


def make_record(readwise_id, **overrides):
    values = dict(
        readwise_id=readwise_id, url=None, source_url=None, title=f"Document {readwise_id}",
        author=None, summary=None, category="article", location="new", tags=[],
        site_name=None, word_count=None, published_date=None, reading_progress=0.0,
        first_opened_at=None, last_opened_at=None, last_moved_at=None, parent_id=None,
        created_at=NOW, updated_at=NOW,
    )
    values.update(overrides)
    return DocumentRecord(**values)


@pytest.fixture
def db_ops():
    db = DatabaseOperations(database_url="sqlite:///:memory:")
    db.create_tables()
    db.save_triage_settings(TriageSettings(30, 90, 180))

    for record in [
        make_record("n1", created_at=days_ago(2), word_count=1000, site_name="blog.com", tags=["ml"]),
        make_record(
            "n2", location="later", created_at=days_ago(100), word_count=3000,
            site_name="blog.com", tags=["ml", "ai"], title="Deep Learning Essay"
        ),
        make_record("n3", category="rss", created_at=days_ago(40), word_count=500, site_name="news.com"),
        make_record(
            "a1", location="archive", created_at=days_ago(50), last_opened_at=days_ago(3),
            last_moved_at=days_ago(3), reading_progress=1.0, word_count=2000,
            site_name="blog.com", tags=["ai"]
        ),
        make_record(
            "a2", category="pdf", location="archive", created_at=days_ago(20),
            last_opened_at=days_ago(10), last_moved_at=days_ago(10), reading_progress=0.5
        ),
        make_record("h1", category="highlight", location=None, created_at=days_ago(1)),
    ]:
        db.upsert_document(record)

    return db


@pytest.fixture
def analytics(db_ops):
    return AnalyticsService(db_ops, clock=lambda: NOW)


def test_document_stats(analytics):
    """Test dashboard totals and distributions."""
    stats = analytics.document_stats()

    assert stats["total"] == 6
    assert stats["by_location"] == {"new": 2, "later": 1, "archive": 2}
    assert stats["by_category"] == {"article": 3, "rss": 1, "pdf": 1, "highlight": 1}
    assert stats["reading_progress"] == {"not_started": 4, "in_progress": 1, "completed": 1}
    assert {t["tag"]: t["count"] for t in stats["top_tags"]} == {"ml": 2, "ai": 2}
    assert stats["recently_added"] == 2
    assert stats["read_this_week"] == 1
    assert stats["read_this_month"] == 2
    assert stats["avg_words_per_document"] == 1625


def test_documents_added_over_time(analytics):
    """Test the daily series covers every day, including empty ones."""
    series = analytics.documents_added_over_time(days=7)

    assert len(series) == 7
    assert series[0]["date"] == "2024-05-26"
    assert series[-1]["date"] == "2024-06-01"
    counts = {point["date"]: point["count"] for point in series}
    assert counts["2024-05-30"] == 1
    assert counts["2024-05-31"] == 1
    assert sum(counts.values()) == 2


def test_documents_read_over_time(analytics):
    """Test reads are counted by the day they were last opened."""
    counts = {p["date"]: p["count"] for p in analytics.documents_read_over_time(days=7)}

    assert counts["2024-05-29"] == 1
    assert sum(counts.values()) == 1


def test_recent_documents(analytics):
    """Test the newest documents come first."""
    recent = analytics.recent_documents(limit=2)

    assert [doc["readwise_id"] for doc in recent] == ["h1", "n1"]
    assert recent[0]["created_at"] == days_ago(1).isoformat()


def test_search_documents(analytics):
    """Test search matches titles and site names case-insensitively."""
    assert [d["readwise_id"] for d in analytics.search_documents("learning")] == ["n2"]
    assert {d["readwise_id"] for d in analytics.search_documents("BLOG.com")} == {"n1", "n2", "a1"}
    assert analytics.search_documents("nothing matches") == []


def test_velocity_metrics(analytics):
    """Test backlog growth against reading pace."""
    velocity = analytics.velocity_metrics()

    assert velocity["added_last_7_days"] == 1
    assert velocity["added_last_30_days"] == 1
    assert velocity["read_last_7_days"] == 1
    assert velocity["read_last_30_days"] == 2
    assert velocity["weekly_net_change"] == 0
    assert velocity["monthly_net_change"] == -1
    assert velocity["projected_yearly_growth"] == 0
    assert velocity["unread_count"] == 3
    assert velocity["estimated_reading_hours"] == 0


def test_stale_documents_grouped_by_threshold(analytics):
    """Test category-specific thresholds."""
    groups = {group["category"]: group for group in analytics.stale_documents()}

    assert groups["news"]["threshold"] == 30
    assert groups["news"]["count"] == 1
    assert groups["news"]["total_word_count"] == 500
    assert [d["readwise_id"] for d in groups["news"]["documents"]] == ["n3"]

    assert groups["articles"]["count"] == 1
    assert groups["articles"]["documents"][0]["readwise_id"] == "n2"
    assert groups["articles"]["documents"][0]["age_in_days"] == 100

    assert groups["other"]["count"] == 0
    assert groups["other"]["documents"] == []


def test_stale_documents_follow_saved_thresholds(db_ops, analytics):
    """Test lowering a threshold widens its group."""
    db_ops.save_triage_settings(TriageSettings(30, 1, 180))

    groups = {group["category"]: group for group in analytics.stale_documents()}

    assert {d["readwise_id"] for d in groups["articles"]["documents"]} == {"n1", "n2"}


def test_stale_documents_by_age(analytics):
    """Test a single age threshold, oldest first."""
    result = analytics.stale_documents_by_age(older_than_days=30)

    assert result["count"] == 2
    assert [d["readwise_id"] for d in result["documents"]] == ["n2", "n3"]


def test_low_engagement_sources(analytics):
    """Test sources are ranked by completion rate, then backlog."""
    sources = analytics.low_engagement_sources(min_docs=2)

    assert sources == [{
        "site_name": "blog.com",
        "total_saved": 3,
        "total_read": 1,
        "completion_rate": pytest.approx(1 / 3),
        "unread_count": 2,
    }]

    ranked = analytics.low_engagement_sources(min_docs=1)
    assert [s["site_name"] for s in ranked] == ["news.com", "blog.com"]


def test_tag_engagement(analytics):
    """Test tags are ranked by completion rate."""
    tags = analytics.tag_engagement()

    assert [t["tag"] for t in tags] == ["ml", "ai"]
    assert tags[0]["completion_rate"] == 0.0
    assert tags[1]["completion_rate"] == 0.5


def test_triage_summary(analytics):
    """Test the headline triage numbers."""
    assert analytics.triage_summary() == {
        "unread_count": 3,
        "stale_count": 2,
        "weekly_net_change": 0,
        "is_growing_faster": False,
    }


def test_empty_library(db_ops):
    """Test analytics over an empty library."""
    db_ops.reset_sync()
    analytics = AnalyticsService(db_ops, clock=lambda: NOW)

    stats = analytics.document_stats()
    assert stats["total"] == 0
    assert stats["avg_words_per_document"] == 0
    assert analytics.velocity_metrics()["estimated_reading_hours"] == 0
    assert analytics.low_engagement_sources() == []
