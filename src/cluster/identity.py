"""
Cluster Identity Service - What is each cluster "about"?

Composes read-side aggregates into one identity per cluster:
- representatives: members ranked by cosine to the latest dynamics centroid
- drift summary: the cluster's share of recent drift and its trend
- influence summary: outgoing/incoming edge weight, hubness and authority
- keywords: frequency-ranked title tokens of the representatives

The identities can be cached in cluster_identities via refresh_identity_cache().
"""
from __future__ import annotations

import json
import re
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any

from loguru import logger
from sqlalchemy import text
from sqlalchemy.orm import Session

from config import Settings, get_settings
from src.drift.event_detector import parse_semantic_diff
from src.semantic.vector_math import bytes_to_float32, cosine_similarity, round4

STOP_WORDS = frozenset(
    [
        # Japanese particles, auxiliaries and filler
        "の", "に", "は", "を", "た", "が", "で", "て", "と", "し", "れ", "さ",
        "ある", "いる", "も", "する", "から", "な", "こと", "として", "い", "や",
        "れる", "など", "なっ", "ない", "この", "ため", "その", "あっ", "よう",
        "また", "もの", "という", "あり", "まで", "られ", "なる", "へ", "か",
        "だ", "これ", "によって", "により", "おり", "より", "による", "ず", "なり",
        "について", "できる", "ます", "です", "ました", "でき", "った", "ている",
        "での", "における", "こちら", "それ", "何", "どう", "どの", "どれ",
        "ところ", "とき", "ところが", "しかし", "だが", "ので",
        "に対して", "の中で", "たち",
        "用", "版", "向け", "ログ", "日", "月", "年", "投稿", "下書き", "まとめ",
        # English function words
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "shall", "can", "need", "dare",
        "ought", "used", "to", "of", "in", "for", "on", "with", "at", "by",
        "from", "as", "into", "through", "during", "before", "after", "above",
        "below", "between", "under", "again", "further", "then", "once",
        "and", "but", "or", "nor", "so", "yet", "both", "either", "neither",
        "not", "only", "own", "same", "than", "too", "very", "just",
        # Note-taking noise
        "todo", "slack",
    ]
)

_PUNCTUATION = re.compile(r"[（）()【】「」『』\[\]<>《》〈〉\"'“”‘’・、。，．！？!?：；:;&@#$%^*+=|~`]")
_DIGITS = re.compile(r"[0-9０-９]+")
# Katakana runs (with the long vowel mark) or kanji runs
_JAPANESE_WORD = re.compile(r"[ァ-ヶー]+|[一-龠々]+")
_LATIN_WORD = re.compile(r"[a-zA-Z]{2,}")


def extract_keywords(titles: list[str], max_keywords: int = 5) -> list[str]:
    """
    Frequency-ranked keywords from note titles.

    Punctuation and digits are stripped, katakana/kanji runs and Latin words
    (lowercased) are kept when 2-20 chars long and not stop words. Ties keep
    first-seen order.
    """
    counts: Counter[str] = Counter()
    for title in titles:
        cleaned = _DIGITS.sub(" ", _PUNCTUATION.sub(" ", title or ""))

        japanese = [word for word in _JAPANESE_WORD.findall(cleaned) if len(word) >= 2]
        latin = [word.lower() for word in _LATIN_WORD.findall(cleaned)]

        for token in japanese + latin:
            if token in STOP_WORDS or not 2 <= len(token) <= 20:
                continue
            counts[token] += 1

    ranked = sorted(counts.items(), key=lambda item: -item[1])
    return [word for word, _ in ranked[:max_keywords]]


def build_label(cluster_id: int, keywords: list[str]) -> str:
    if not keywords:
        return f"Cluster {cluster_id}"
    return " / ".join(keywords[:3])


@dataclass
class RepresentativeNote:
    id: str
    title: str
    category: str | None
    cosine: float


@dataclass
class ClusterDriftSummary:
    contribution: float
    trend: str  # rising | falling | flat
    cluster_drift_sum: float


@dataclass
class ClusterInfluenceSummary:
    out_degree: float
    in_degree: float
    hubness: float
    authority: float


@dataclass
class ClusterIdentity:
    """Composite identity of one cluster."""

    cluster_id: int
    label: str
    keywords: list[str] = field(default_factory=list)
    representatives: list[RepresentativeNote] = field(default_factory=list)
    drift: ClusterDriftSummary | None = None
    influence: ClusterInfluenceSummary | None = None
    cohesion: float = 0.0
    note_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ClusterIdentityService:
    """
    Read-side aggregation of cluster identities.

    Example:
        >>> service = ClusterIdentityService(db_session)
        >>> identity = service.get_cluster_identity(3)
        >>> print(identity.label, identity.drift.trend)
    """

    def __init__(self, db_session: Session, settings: Settings | None = None):
        """
        Initialize the identity service.

        Args:
            db_session: SQLAlchemy database session.
            settings: Application settings (defaults to get_settings()).
        """
        self.db = db_session
        self.settings = settings or get_settings()

    def get_representative_notes(self, cluster_id: int, top: int | None = None) -> list[RepresentativeNote]:
        """Members ranked by cosine to the cluster's latest dynamics centroid."""
        top = self.settings.identity_representatives if top is None else top

        centroid_blob = self.db.execute(
            text("""
                SELECT centroid FROM cluster_dynamics
                WHERE cluster_id = :cluster_id
                ORDER BY date DESC
                LIMIT 1
            """),
            {"cluster_id": cluster_id},
        ).scalar()
        if centroid_blob is None:
            return []

        centroid = bytes_to_float32(centroid_blob)
        if centroid.size == 0:
            return []

        rows = self.db.execute(
            text("""
                SELECT n.id AS note_id, n.title, n.category, ne.embedding
                FROM notes n
                JOIN note_embeddings ne ON n.id = ne.note_id
                WHERE n.cluster_id = :cluster_id
            """),
            {"cluster_id": cluster_id},
        ).fetchall()

        scored = []
        for row in rows:
            embedding = bytes_to_float32(row.embedding)
            if embedding.size == 0:
                continue
            scored.append(
                RepresentativeNote(
                    id=row.note_id,
                    title=row.title,
                    category=row.category,
                    cosine=round4(cosine_similarity(centroid, embedding)),
                )
            )

        scored.sort(key=lambda note: (-note.cosine, note.id))
        return scored[:top]

    def get_drift_summary(
        self,
        cluster_id: int,
        range_days: int | None = None,
        now: int | None = None,
    ) -> ClusterDriftSummary:
        """
        Share of total drift landing in this cluster, with a half-window trend.

        The window is split in half: the recent half is compared to the older
        one with a +/-20% relative threshold.
        """
        range_days = self.settings.identity_drift_range_days if range_days is None else range_days
        now = int(time.time()) if now is None else now
        start = now - range_days * 86400
        mid = now - (range_days * 86400) // 2

        rows = self.db.execute(
            text("""
                SELECT semantic_diff, new_cluster_id, created_at
                FROM note_history
                WHERE semantic_diff IS NOT NULL
                  AND created_at >= :start
            """),
            {"start": start},
        ).fetchall()

        total_sum = cluster_sum = recent_sum = older_sum = 0.0
        for row in rows:
            diff = parse_semantic_diff(row.semantic_diff)
            if diff is None:
                continue
            total_sum += diff
            if row.new_cluster_id != cluster_id:
                continue
            cluster_sum += diff
            if row.created_at >= mid:
                recent_sum += diff
            else:
                older_sum += diff

        ratio = self.settings.identity_trend_ratio
        trend = "flat"
        if recent_sum > older_sum * (1 + ratio):
            trend = "rising"
        elif recent_sum < older_sum * (1 - ratio):
            trend = "falling"

        return ClusterDriftSummary(
            contribution=round4(cluster_sum / total_sum) if total_sum > 0 else 0.0,
            trend=trend,
            cluster_drift_sum=round4(cluster_sum),
        )

    def get_influence_summary(self, cluster_id: int) -> ClusterInfluenceSummary:
        """Edge weight leaving / entering the cluster's current members."""
        out_degree = self.db.execute(
            text("""
                SELECT SUM(e.weight)
                FROM note_influence_edges e
                JOIN notes n ON e.source_note_id = n.id
                WHERE n.cluster_id = :cluster_id
            """),
            {"cluster_id": cluster_id},
        ).scalar() or 0.0

        in_degree = self.db.execute(
            text("""
                SELECT SUM(e.weight)
                FROM note_influence_edges e
                JOIN notes n ON e.target_note_id = n.id
                WHERE n.cluster_id = :cluster_id
            """),
            {"cluster_id": cluster_id},
        ).scalar() or 0.0

        total = out_degree + in_degree
        return ClusterInfluenceSummary(
            out_degree=round4(out_degree),
            in_degree=round4(in_degree),
            hubness=round4(out_degree / total) if total > 0 else 0.0,
            authority=round4(in_degree / total) if total > 0 else 0.0,
        )

    def get_cluster_identity(self, cluster_id: int, now: int | None = None) -> ClusterIdentity | None:
        """Full identity, or None when the cluster has no dynamics snapshot."""
        info = self.db.execute(
            text("""
                SELECT note_count, cohesion
                FROM cluster_dynamics
                WHERE cluster_id = :cluster_id
                ORDER BY date DESC
                LIMIT 1
            """),
            {"cluster_id": cluster_id},
        ).fetchone()
        if info is None:
            return None

        representatives = self.get_representative_notes(cluster_id)
        keywords = extract_keywords(
            [note.title for note in representatives], self.settings.identity_max_keywords
        )

        return ClusterIdentity(
            cluster_id=cluster_id,
            label=build_label(cluster_id, keywords),
            keywords=keywords,
            representatives=representatives,
            drift=self.get_drift_summary(cluster_id, now=now),
            influence=self.get_influence_summary(cluster_id),
            cohesion=info.cohesion,
            note_count=info.note_count,
        )

    def get_all_cluster_identities(self, now: int | None = None) -> list[ClusterIdentity]:
        """Identities of every cluster that appears in cluster_dynamics."""
        cluster_ids = [
            row[0]
            for row in self.db.execute(
                text("SELECT DISTINCT cluster_id FROM cluster_dynamics ORDER BY cluster_id")
            ).fetchall()
        ]
        identities = []
        for cluster_id in cluster_ids:
            identity = self.get_cluster_identity(cluster_id, now=now)
            if identity is not None:
                identities.append(identity)
        return identities

    def refresh_identity_cache(self, now: int | None = None) -> int:
        """Rebuild cluster_identities from scratch; returns the row count."""
        now = int(time.time()) if now is None else now
        identities = self.get_all_cluster_identities(now=now)

        self.db.execute(text("DELETE FROM cluster_identities"))
        for identity in identities:
            data = identity.to_dict()
            self.db.execute(
                text("""
                    INSERT INTO cluster_identities
                        (cluster_id, label, keywords, representatives, drift_summary,
                         influence_summary, cohesion, note_count, updated_at)
                    VALUES
                        (:cluster_id, :label, :keywords, :representatives, :drift_summary,
                         :influence_summary, :cohesion, :note_count, :updated_at)
                """),
                {
                    "cluster_id": identity.cluster_id,
                    "label": identity.label,
                    "keywords": json.dumps(identity.keywords, ensure_ascii=False),
                    "representatives": json.dumps(data["representatives"], ensure_ascii=False),
                    "drift_summary": json.dumps(data["drift"]),
                    "influence_summary": json.dumps(data["influence"]),
                    "cohesion": identity.cohesion,
                    "note_count": identity.note_count,
                    "updated_at": now,
                },
            )

        self.db.commit()
        logger.info(f"Refreshed cluster identity cache: {len(identities)} clusters")
        return len(identities)

    def get_cached_identities(self) -> list[dict[str, Any]]:
        rows = self.db.execute(
            text("""
                SELECT cluster_id, label, keywords, representatives, drift_summary,
                       influence_summary, cohesion, note_count, updated_at
                FROM cluster_identities
                ORDER BY cluster_id
            """)
        ).fetchall()
        return [
            {
                "cluster_id": row.cluster_id,
                "label": row.label,
                "keywords": json.loads(row.keywords),
                "representatives": json.loads(row.representatives),
                "drift": json.loads(row.drift_summary),
                "influence": json.loads(row.influence_summary),
                "cohesion": row.cohesion,
                "note_count": row.note_count,
                "updated_at": row.updated_at,
            }
            for row in rows
        ]
