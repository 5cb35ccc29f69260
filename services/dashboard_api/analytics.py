"""Read-only statistics over the synced Readwise library."""

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, func, or_

from shared.db_models import Document
from shared.db_operations import DatabaseOperations
from shared.models import Location, UNREAD_LOCATIONS, utcnow

logger = logging.getLogger(__name__)

ARCHIVE = Location.ARCHIVE.value

# Reading speed used for backlog estimates
WORDS_PER_MINUTE = 200
DEFAULT_WORD_COUNT = 1500

STALE_GROUPS = [
    {
        "category": "news",
        "label": "News & RSS",
        "categories": ["rss", "tweet"],
        "threshold_key": "stale_news_threshold",
    },
    {
        "category": "articles",
        "label": "Articles",
        "categories": ["article"],
        "threshold_key": "stale_article_threshold",
    },
    {
        "category": "other",
        "label": "Other Content",
        "categories": ["email", "pdf", "epub", "video", "highlight", "note"],
        "threshold_key": "stale_default_threshold",
    },
]


class AnalyticsService:
    """Aggregations behind the dashboard and triage pages."""

    def __init__(self, db_ops: DatabaseOperations, clock: Callable[[], datetime] = utcnow):
        self.db_ops = db_ops
        self._clock = clock

    def _days_ago(self, days: int) -> datetime:
        return self._clock() - timedelta(days=days)

    def _count(self, session, *criteria) -> int:
        stmt = select(func.count(Document.id)).where(*criteria)
        return session.execute(stmt).scalar() or 0

    # Dashboard

    def document_stats(self) -> Dict:
        """Totals, distributions and recent activity for the dashboard."""
        week_ago = self._days_ago(7)
        month_ago = self._days_ago(30)

        with self.db_ops.get_session() as session:
            total = self._count(session)

            by_location = {
                location: count
                for location, count in session.execute(
                    select(Document.location, func.count(Document.id)).group_by(Document.location)
                ).all()
                # Highlights and notes can have no location
                if location
            }
            by_category = dict(session.execute(
                select(Document.category, func.count(Document.id)).group_by(Document.category)
            ).all())

            reading_progress = {
                "not_started": self._count(session, Document.reading_progress == 0),
                "in_progress": self._count(
                    session, Document.reading_progress > 0, Document.reading_progress < 1
                ),
                "completed": self._count(session, Document.reading_progress >= 1),
            }

            tag_counts = Counter()
            for tags in session.execute(select(Document.tags)).scalars():
                tag_counts.update(tags or [])

            recently_added = self._count(session, Document.created_at >= week_ago)
            read_this_week = self._count(
                session, Document.location == ARCHIVE, Document.last_opened_at >= week_ago
            )
            read_this_month = self._count(
                session, Document.location == ARCHIVE, Document.last_opened_at >= month_ago
            )
            avg_words = session.execute(select(func.avg(Document.word_count))).scalar()

        return {
            "total": total,
            "by_location": by_location,
            "by_category": by_category,
            "reading_progress": reading_progress,
            "top_tags": [
                {"tag": tag, "count": count}
                for tag, count in tag_counts.most_common(10)
            ],
            "recently_added": recently_added,
            "read_this_week": read_this_week,
            "read_this_month": read_this_month,
            "avg_words_per_document": round(avg_words or 0),
        }

    def documents_added_over_time(self, days: int = 30) -> List[Dict]:
        """Documents saved per day over the last ``days`` days."""
        with self.db_ops.get_session() as session:
            timestamps = session.execute(
                select(Document.created_at).where(Document.created_at >= self._days_ago(days))
            ).scalars().all()
        return self._daily_series(timestamps, days)

    def documents_read_over_time(self, days: int = 30) -> List[Dict]:
        """Archived documents per day of last opening over the last ``days`` days."""
        with self.db_ops.get_session() as session:
            timestamps = session.execute(
                select(Document.last_opened_at).where(
                    Document.location == ARCHIVE,
                    Document.last_opened_at >= self._days_ago(days)
                )
            ).scalars().all()
        return self._daily_series(timestamps, days)

    def _daily_series(self, timestamps: List[Optional[datetime]], days: int) -> List[Dict]:
        now = self._clock()
        counts = {
            (now - timedelta(days=days - 1 - i)).date().isoformat(): 0
            for i in range(days)
        }
        for timestamp in timestamps:
            if timestamp is None:
                continue
            key = timestamp.date().isoformat()
            if key in counts:
                counts[key] += 1
        return [{"date": date, "count": count} for date, count in counts.items()]

    def recent_documents(self, limit: int = 10) -> List[Dict]:
        """Most recently saved documents."""
        with self.db_ops.get_session() as session:
            documents = session.execute(
                select(Document).order_by(Document.created_at.desc()).limit(limit)
            ).scalars().all()
            return [_document_summary(doc) for doc in documents]

    def search_documents(self, query: str, limit: int = 20) -> List[Dict]:
        """Case-insensitive search over title, author, summary and site name."""
        pattern = f"%{query}%"
        with self.db_ops.get_session() as session:
            documents = session.execute(
                select(Document).where(or_(
                    Document.title.ilike(pattern),
                    Document.author.ilike(pattern),
                    Document.summary.ilike(pattern),
                    Document.site_name.ilike(pattern)
                )).order_by(Document.created_at.desc()).limit(limit)
            ).scalars().all()
            return [_document_summary(doc) for doc in documents]

    # Triage

    def velocity_metrics(self) -> Dict:
        """How fast the unread backlog grows compared to how fast it is read."""
        unread = Document.location.in_(UNREAD_LOCATIONS)
        archived = Document.location == ARCHIVE

        with self.db_ops.get_session() as session:
            added_7 = self._count(session, unread, Document.created_at >= self._days_ago(7))
            added_30 = self._count(session, unread, Document.created_at >= self._days_ago(30))
            read_7 = self._count(session, archived, Document.last_moved_at >= self._days_ago(7))
            read_30 = self._count(session, archived, Document.last_moved_at >= self._days_ago(30))
            unread_count = self._count(session, unread)
            avg_words = session.execute(
                select(func.avg(Document.word_count)).where(
                    unread, Document.word_count.isnot(None)
                )
            ).scalar()

        weekly_net_change = added_7 - read_7
        total_words = unread_count * (avg_words or DEFAULT_WORD_COUNT)

        return {
            "added_last_7_days": added_7,
            "added_last_30_days": added_30,
            "read_last_7_days": read_7,
            "read_last_30_days": read_30,
            "weekly_net_change": weekly_net_change,
            "monthly_net_change": added_30 - read_30,
            "projected_yearly_growth": weekly_net_change * 52,
            "unread_count": unread_count,
            "estimated_reading_hours": round(total_words / WORDS_PER_MINUTE / 60),
        }

    def _stale_criteria(self, cutoff: datetime, categories: Optional[List[str]] = None) -> list:
        criteria = [
            Document.location.in_(UNREAD_LOCATIONS),
            Document.created_at < cutoff,
            Document.reading_progress == 0,
        ]
        if categories:
            criteria.append(Document.category.in_(categories))
        return criteria

    def _stale_documents(self, session, criteria: list, limit: int) -> List[Dict]:
        now = self._clock()
        documents = session.execute(
            select(Document).where(*criteria).order_by(Document.created_at.asc()).limit(limit)
        ).scalars().all()
        return [
            {**_document_summary(doc), "age_in_days": (now - doc.created_at).days}
            for doc in documents
        ]

    def stale_documents(self, limit: int = 50) -> List[Dict]:
        """Unread, unstarted documents past their category's threshold, grouped."""
        thresholds = self.db_ops.get_triage_settings()
        groups = []

        with self.db_ops.get_session() as session:
            for group in STALE_GROUPS:
                threshold = getattr(thresholds, group["threshold_key"])
                criteria = self._stale_criteria(self._days_ago(threshold), group["categories"])

                count, total_words = session.execute(
                    select(func.count(Document.id), func.sum(Document.word_count)).where(*criteria)
                ).one()

                groups.append({
                    "category": group["category"],
                    "label": group["label"],
                    "threshold": threshold,
                    "count": count or 0,
                    "total_word_count": total_words or 0,
                    "documents": self._stale_documents(session, criteria, limit) if limit > 0 else [],
                })

        return groups

    def stale_documents_by_age(self, older_than_days: int, limit: int = 50) -> Dict:
        """Unread, unstarted documents older than a single threshold."""
        criteria = self._stale_criteria(self._days_ago(older_than_days))
        with self.db_ops.get_session() as session:
            return {
                "count": self._count(session, *criteria),
                "documents": self._stale_documents(session, criteria, limit),
            }

    def low_engagement_sources(self, min_docs: int = 5) -> List[Dict]:
        """Sites whose saved documents are least often read."""
        with self.db_ops.get_session() as session:
            rows = session.execute(
                select(Document.site_name, Document.location, func.count(Document.id))
                .where(Document.site_name.isnot(None))
                .group_by(Document.site_name, Document.location)
            ).all()

        stats = defaultdict(lambda: {"saved": 0, "read": 0, "unread": 0})
        for site_name, location, count in rows:
            _tally(stats[site_name], location, count)

        return _engagement_ranking(stats, "site_name", min_docs)

    def tag_engagement(self) -> List[Dict]:
        """Tags whose documents are least often read."""
        with self.db_ops.get_session() as session:
            rows = session.execute(select(Document.tags, Document.location)).all()

        stats = defaultdict(lambda: {"saved": 0, "read": 0, "unread": 0})
        for tags, location in rows:
            for tag in tags or []:
                _tally(stats[tag], location, 1)

        return _engagement_ranking(stats, "tag", min_docs=1)

    def triage_summary(self) -> Dict:
        """Headline numbers for the dashboard's triage card."""
        velocity = self.velocity_metrics()
        stale_count = sum(group["count"] for group in self.stale_documents(limit=0))

        return {
            "unread_count": velocity["unread_count"],
            "stale_count": stale_count,
            "weekly_net_change": velocity["weekly_net_change"],
            "is_growing_faster": velocity["weekly_net_change"] > 0,
        }


def _tally(entry: Dict, location: Optional[str], count: int) -> None:
    entry["saved"] += count
    if location == ARCHIVE:
        entry["read"] += count
    elif location in UNREAD_LOCATIONS:
        entry["unread"] += count


def _engagement_ranking(stats: Dict, key: str, min_docs: int, top: int = 20) -> List[Dict]:
    ranking = [
        {
            key: name,
            "total_saved": entry["saved"],
            "total_read": entry["read"],
            "completion_rate": entry["read"] / entry["saved"] if entry["saved"] else 0.0,
            "unread_count": entry["unread"],
        }
        for name, entry in stats.items()
        if entry["saved"] >= min_docs
    ]
    # Lowest completion first, then largest backlog
    ranking.sort(key=lambda item: (item["completion_rate"], -item["unread_count"]))
    return ranking[:top]


def _document_summary(doc: Document) -> Dict:
    return {
        "readwise_id": doc.readwise_id,
        "title": doc.title,
        "author": doc.author,
        "url": doc.url,
        "category": doc.category,
        "location": doc.location,
        "tags": doc.tags or [],
        "site_name": doc.site_name,
        "word_count": doc.word_count,
        "reading_progress": doc.reading_progress,
        "created_at": doc.created_at.isoformat() if doc.created_at else None,
        "published_date": doc.published_date.isoformat() if doc.published_date else None,
    }
