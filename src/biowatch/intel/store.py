# Intel Module - SQLite Threat Storage
#
# Relational store shared by the ingestion pipeline and the admin
# surface:
#   threats          - canonical threat records (dedup key: external_reference)
#   classifications  - one active oracle verdict per threat
#   api_sources      - per-provider enabled flag and sync status
#
# A threat and its classification are always written in one transaction.

import json
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from ..core.db import connect as db_connect
from .models import (
    CanonicalThreat,
    Classification,
    SourceSyncStatus,
    SyncOutcome,
    ThreatSource,
    ThreatStatus,
    ThreatTier,
)

DEFAULT_DB_PATH = "./data/biowatch.db"

_SOURCE_NAMES = {
    ThreatSource.OTX: "AlienVault OTX",
    ThreatSource.NVD: "NIST NVD",
    ThreatSource.CISA: "CISA KEV",
}


def _iso(value: Optional[datetime] = None) -> str:
    return (value or datetime.now(timezone.utc)).isoformat()


class ThreatStore:
    """SQLite-backed storage for ingested threats and sync status.

    Thread-safe via a reentrant lock around every statement; the
    scheduler thread and the admin surface share one connection.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = db_connect(db_path, check_same_thread=False, row_factory=True)
        self._create_tables()

    def _create_tables(self) -> None:
        """Create the schema if it doesn't already exist."""
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS threats (
                    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                    title              TEXT    NOT NULL,
                    description        TEXT    NOT NULL DEFAULT '',
                    category           TEXT    NOT NULL DEFAULT '',
                    source             TEXT    NOT NULL,
                    date_observed      TEXT    NOT NULL,
                    impact_level       TEXT    NOT NULL,
                    external_reference TEXT,
                    status             TEXT    NOT NULL,
                    user_id            INTEGER,
                    created_at         TEXT    NOT NULL,
                    updated_at         TEXT    NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_threats_reference
                    ON threats(external_reference);
                CREATE INDEX IF NOT EXISTS idx_threats_source
                    ON threats(source);
                CREATE INDEX IF NOT EXISTS idx_threats_status
                    ON threats(status);

                CREATE TABLE IF NOT EXISTS classifications (
                    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
                    threat_id            INTEGER NOT NULL UNIQUE
                        REFERENCES threats(id) ON DELETE CASCADE,
                    ai_tier              TEXT    NOT NULL,
                    ai_confidence        REAL    NOT NULL,
                    ai_reasoning         TEXT    NOT NULL DEFAULT '',
                    ai_actions           TEXT    NOT NULL DEFAULT '',
                    ai_next_steps        TEXT    NOT NULL DEFAULT '[]',
                    ai_keywords          TEXT    NOT NULL DEFAULT '[]',
                    bio_sector_relevance REAL    NOT NULL DEFAULT 50,
                    raw_response         TEXT,
                    is_fallback          INTEGER NOT NULL DEFAULT 0,
                    ai_classified_at     TEXT    NOT NULL,
                    created_at           TEXT    NOT NULL
                );

                CREATE TABLE IF NOT EXISTS api_sources (
                    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
                    api_type              TEXT    NOT NULL UNIQUE,
                    name                  TEXT    NOT NULL,
                    enabled               INTEGER NOT NULL DEFAULT 1,
                    last_sync_at          TEXT,
                    last_sync_status      TEXT,
                    last_sync_error       TEXT,
                    threats_fetched_count INTEGER NOT NULL DEFAULT 0,
                    created_at            TEXT    NOT NULL DEFAULT (datetime('now')),
                    updated_at            TEXT    NOT NULL DEFAULT (datetime('now'))
                );

                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER NOT NULL
                );
                """
            )
            # executescript resets connection PRAGMAs on some builds
            self._conn.execute("PRAGMA foreign_keys=ON")
            row = self._conn.execute(
                "SELECT version FROM schema_version LIMIT 1"
            ).fetchone()
            if row is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,),
                )
            self._conn.commit()

    # ------------------------------------------------------------------
    # Threat + classification writes
    # ------------------------------------------------------------------

    def save_classified_threat(
        self,
        threat: CanonicalThreat,
        classification: Classification,
        now: Optional[datetime] = None,
    ) -> int:
        """Persist a threat and its classification as one unit.

        A threat carrying ``threat_id`` refreshes that row in place (its
        ``created_at`` is kept) and replaces its classification; otherwise a
        new row is inserted.  Returns the threat id.
        """
        stamp = _iso(now)
        status = ThreatStatus.PENDING_REVIEW.value

        with self._lock, self._conn:
            threat_id = threat.threat_id
            if threat_id is not None:
                cursor = self._conn.execute(
                    """
                    UPDATE threats
                       SET title = ?, description = ?, category = ?, source = ?,
                           date_observed = ?, impact_level = ?,
                           external_reference = ?, status = ?, updated_at = ?
                     WHERE id = ?
                    """,
                    (
                        threat.title,
                        threat.description,
                        threat.category,
                        threat.source.value,
                        threat.date_observed.date().isoformat(),
                        threat.impact_level.value,
                        threat.external_reference,
                        status,
                        stamp,
                        threat_id,
                    ),
                )
                if cursor.rowcount == 0:
                    threat_id = None

            if threat_id is None:
                cursor = self._conn.execute(
                    """
                    INSERT INTO threats
                        (title, description, category, source, date_observed,
                         impact_level, external_reference, status, user_id,
                         created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        threat.title,
                        threat.description,
                        threat.category,
                        threat.source.value,
                        threat.date_observed.date().isoformat(),
                        threat.impact_level.value,
                        threat.external_reference,
                        status,
                        threat.origin_user,
                        stamp,
                        stamp,
                    ),
                )
                threat_id = cursor.lastrowid

            self._conn.execute(
                """
                INSERT INTO classifications
                    (threat_id, ai_tier, ai_confidence, ai_reasoning, ai_actions,
                     ai_next_steps, ai_keywords, bio_sector_relevance,
                     raw_response, is_fallback, ai_classified_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(threat_id) DO UPDATE SET
                    ai_tier = excluded.ai_tier,
                    ai_confidence = excluded.ai_confidence,
                    ai_reasoning = excluded.ai_reasoning,
                    ai_actions = excluded.ai_actions,
                    ai_next_steps = excluded.ai_next_steps,
                    ai_keywords = excluded.ai_keywords,
                    bio_sector_relevance = excluded.bio_sector_relevance,
                    raw_response = excluded.raw_response,
                    is_fallback = excluded.is_fallback,
                    ai_classified_at = excluded.ai_classified_at
                """,
                (
                    threat_id,
                    classification.tier.value,
                    float(classification.confidence),
                    classification.reasoning,
                    classification.recommended_actions,
                    json.dumps(classification.next_steps),
                    json.dumps(classification.keywords),
                    float(classification.bio_sector_relevance),
                    classification.raw_response,
                    int(classification.is_fallback),
                    stamp,
                    stamp,
                ),
            )

        threat.threat_id = threat_id
        threat.status = ThreatStatus.PENDING_REVIEW
        classification.threat_id = threat_id
        return threat_id

    def delete_threat(self, threat_id: int) -> bool:
        """Delete a threat (and, by cascade, its classification)."""
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "DELETE FROM threats WHERE id = ?", (threat_id,)
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Threat reads
    # ------------------------------------------------------------------

    def find_by_external_reference(self, reference: str) -> Optional[Dict[str, Any]]:
        """Return the stored threat row carrying ``reference``, if any."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM threats WHERE external_reference = ? "
                "ORDER BY id LIMIT 1",
                (reference,),
            ).fetchone()
        return dict(row) if row else None

    def get_threat(self, threat_id: int) -> Optional[Dict[str, Any]]:
        """Fetch a single threat row by id."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM threats WHERE id = ?", (threat_id,)
            ).fetchone()
        return dict(row) if row else None

    def list_threats(
        self,
        status: Optional[ThreatStatus] = None,
        source: Optional[ThreatSource] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Query threats with optional filters, newest first."""
        clauses: List[str] = []
        params: List[Any] = []

        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if source is not None:
            clauses.append("source = ?")
            params.append(source.value)

        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        sql = f"SELECT * FROM threats{where} ORDER BY id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    def count_threats(self, source: Optional[ThreatSource] = None) -> int:
        """Count stored threats, optionally for one source."""
        with self._lock:
            if source is None:
                row = self._conn.execute("SELECT COUNT(*) FROM threats").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM threats WHERE source = ?",
                    (source.value,),
                ).fetchone()
        return row[0]

    def get_classification(self, threat_id: int) -> Optional[Classification]:
        """Return the active classification for a threat."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM classifications WHERE threat_id = ?", (threat_id,)
            ).fetchone()
        if row is None:
            return None
        return Classification(
            tier=ThreatTier(row["ai_tier"]),
            confidence=row["ai_confidence"],
            reasoning=row["ai_reasoning"],
            recommended_actions=row["ai_actions"],
            next_steps=json.loads(row["ai_next_steps"] or "[]"),
            keywords=json.loads(row["ai_keywords"] or "[]"),
            bio_sector_relevance=row["bio_sector_relevance"],
            raw_response=row["raw_response"] or "",
            is_fallback=bool(row["is_fallback"]),
            threat_id=row["threat_id"],
        )

    # ------------------------------------------------------------------
    # Source status
    # ------------------------------------------------------------------

    def seed_sources(self, enabled: Optional[Mapping[ThreatSource, bool]] = None) -> None:
        """Ensure one api_sources row per provider (existing rows untouched)."""
        enabled = enabled or {}
        with self._lock, self._conn:
            for source in ThreatSource:
                self._conn.execute(
                    "INSERT OR IGNORE INTO api_sources (api_type, name, enabled) "
                    "VALUES (?, ?, ?)",
                    (source.value, _SOURCE_NAMES[source], int(enabled.get(source, True))),
                )

    def is_source_enabled(self, source: ThreatSource) -> bool:
        """Return the enabled flag; unknown sources count as disabled."""
        with self._lock:
            row = self._conn.execute(
                "SELECT enabled FROM api_sources WHERE api_type = ? LIMIT 1",
                (source.value,),
            ).fetchone()
        return bool(row and row["enabled"])

    def set_source_enabled(self, source: ThreatSource, enabled: bool) -> bool:
        """Toggle a source. Returns False if the source row doesn't exist."""
        with self._lock, self._conn:
            cursor = self._conn.execute(
                "UPDATE api_sources SET enabled = ?, updated_at = ? "
                "WHERE api_type = ?",
                (int(enabled), _iso(), source.value),
            )
            return cursor.rowcount > 0

    def update_sync_status(
        self,
        source: ThreatSource,
        success: bool,
        error: Optional[str],
        stored_count: int,
        now: Optional[datetime] = None,
    ) -> None:
        """Record the outcome of one sync attempt for ``source``."""
        stamp = _iso(now)
        outcome = SyncOutcome.SUCCESS if success else SyncOutcome.FAILED
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE api_sources
                   SET last_sync_at = ?, last_sync_status = ?, last_sync_error = ?,
                       threats_fetched_count = threats_fetched_count + ?,
                       updated_at = ?
                 WHERE api_type = ?
                """,
                (stamp, outcome.value, error, stored_count, stamp, source.value),
            )

    def get_source_status(self, source: ThreatSource) -> Optional[SourceSyncStatus]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM api_sources WHERE api_type = ? LIMIT 1",
                (source.value,),
            ).fetchone()
        return self._row_to_status(row) if row else None

    def list_source_statuses(self) -> List[SourceSyncStatus]:
        """Return the SourceSyncStatus table for known providers."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM api_sources ORDER BY id"
            ).fetchall()
        known = {s.value for s in ThreatSource}
        return [self._row_to_status(r) for r in rows if r["api_type"] in known]

    @staticmethod
    def _row_to_status(row: sqlite3.Row) -> SourceSyncStatus:
        last_status = row["last_sync_status"]
        return SourceSyncStatus(
            source=ThreatSource(row["api_type"]),
            enabled=bool(row["enabled"]),
            last_sync_at=row["last_sync_at"],
            last_sync_status=SyncOutcome(last_status) if last_status else None,
            last_sync_error=row["last_sync_error"],
            threats_stored_count=row["threats_fetched_count"],
        )

    # ------------------------------------------------------------------
    # Stats & lifecycle
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Return summary statistics for the store."""
        with self._lock:
            by_tier = {
                r["ai_tier"]: r["n"]
                for r in self._conn.execute(
                    "SELECT ai_tier, COUNT(*) AS n FROM classifications "
                    "GROUP BY ai_tier"
                ).fetchall()
            }
        return {
            "total": self.count_threats(),
            "by_source": {s.value: self.count_threats(s) for s in ThreatSource},
            "by_tier": {t.value: by_tier.get(t.value, 0) for t in ThreatTier},
            "db_path": self.db_path,
        }

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
