# PRD: Risk Module - SQLite Risk Store
# Reference: docs/ARCHITECTURE.md, Section: Risk store
#
# Persistent storage for dynamic risks and their audit trails:
#   risks                  - one row per risk, unique on dedup_key
#   risk_state_transitions - append-only lifecycle audit table
#   processing_log         - append-only create/update/skip decisions,
#                            keyed by connector + indicator
#   indicators             - last known copy of each ingested indicator,
#                            tagged with the pipeline run that saw it
#   risk_scores            - append-only contextual score history
#   risk_clusters          - correlation clusters a risk's indicators fell
#                            in, one row per (risk, cluster)

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from ..core.db import connect as db_connect
from ..intel.models import Indicator, parse_timestamp, utcnow
from .models import (
    DynamicRisk,
    DynamicState,
    FrameworkMapping,
    StateTransition,
    TISourceRecord,
)

DEFAULT_DB_PATH = "data/citadel_risk.db"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class RiskStore:
    """SQLite-backed storage for dynamic risks.

    Thread-safe via a reentrant lock on every operation. Transition and
    processing-log rows are only ever inserted.
    """

    SCHEMA_VERSION = 2

    def __init__(self, db_path: Union[str, Path] = DEFAULT_DB_PATH):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = db_connect(self.db_path, check_same_thread=False, row_factory=True)
        self._create_tables()

    def _create_tables(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS risks (
                    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
                    dedup_key            TEXT    NOT NULL UNIQUE,
                    title                TEXT    NOT NULL,
                    description          TEXT    NOT NULL DEFAULT '',
                    category             TEXT    NOT NULL,
                    dynamic_state        TEXT,
                    confidence_score     REAL    NOT NULL DEFAULT 0,
                    probability          INTEGER NOT NULL,
                    impact               INTEGER NOT NULL,
                    status               TEXT    NOT NULL,
                    priority             TEXT,
                    enrichment_summary   TEXT    NOT NULL DEFAULT '',
                    threat_intel_sources TEXT    NOT NULL DEFAULT '[]',
                    framework_mappings   TEXT    NOT NULL DEFAULT '[]',
                    created_at           TEXT    NOT NULL,
                    updated_at           TEXT    NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_risks_state
                    ON risks(dynamic_state);

                CREATE TABLE IF NOT EXISTS risk_state_transitions (
                    id                INTEGER PRIMARY KEY AUTOINCREMENT,
                    risk_id           INTEGER NOT NULL REFERENCES risks(id),
                    previous_state    TEXT,
                    current_state     TEXT    NOT NULL,
                    reason            TEXT    NOT NULL,
                    automated         INTEGER NOT NULL,
                    actor             TEXT    NOT NULL,
                    confidence_change REAL    NOT NULL DEFAULT 0,
                    created_at        TEXT    NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_transitions_risk
                    ON risk_state_transitions(risk_id);

                CREATE TABLE IF NOT EXISTS processing_log (
                    id              INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id          TEXT,
                    connector_id    TEXT    NOT NULL,
                    indicator_id    TEXT    NOT NULL,
                    indicator_value TEXT    NOT NULL,
                    decision        TEXT    NOT NULL,
                    risk_id         INTEGER,
                    reason          TEXT    NOT NULL DEFAULT '',
                    created_at      TEXT    NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_processing_key
                    ON processing_log(connector_id, indicator_id);

                CREATE TABLE IF NOT EXISTS indicators (
                    id          TEXT PRIMARY KEY,
                    source      TEXT NOT NULL,
                    type        TEXT NOT NULL,
                    value       TEXT NOT NULL,
                    payload     TEXT NOT NULL,
                    run_id      TEXT,
                    updated_at  TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_indicators_run
                    ON indicators(run_id);

                CREATE TABLE IF NOT EXISTS risk_scores (
                    id               INTEGER PRIMARY KEY AUTOINCREMENT,
                    risk_id          INTEGER NOT NULL REFERENCES risks(id),
                    base_score       REAL    NOT NULL,
                    final_score      REAL    NOT NULL,
                    confidence_level TEXT    NOT NULL,
                    payload          TEXT    NOT NULL,
                    calculated_at    TEXT    NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_scores_risk
                    ON risk_scores(risk_id);

                CREATE TABLE IF NOT EXISTS risk_clusters (
                    risk_id            INTEGER NOT NULL REFERENCES risks(id),
                    cluster_id         TEXT    NOT NULL,
                    run_id             TEXT    NOT NULL,
                    cluster_type       TEXT    NOT NULL,
                    label              TEXT    NOT NULL DEFAULT '',
                    cluster_confidence REAL    NOT NULL,
                    risk_level         TEXT    NOT NULL,
                    actor              TEXT,
                    linked_at          TEXT    NOT NULL,
                    PRIMARY KEY (risk_id, cluster_id)
                );

                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER NOT NULL
                );
                """
            )
            self._conn.execute("PRAGMA foreign_keys=ON")
            row = self._conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,),
                )
            elif row["version"] < self.SCHEMA_VERSION:
                self._conn.execute("UPDATE schema_version SET version = ?", (self.SCHEMA_VERSION,))
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Risks
    # ------------------------------------------------------------------

    def insert_risk(self, risk: DynamicRisk, transition: StateTransition) -> DynamicRisk:
        """Insert a new risk together with its creation transition.

        Returns the risk with ``id`` and timestamps filled in.

        Raises:
            sqlite3.IntegrityError: a risk with the same dedup_key exists.
        """
        now = transition.timestamp
        with self._lock:
            try:
                cursor = self._conn.execute(
                    """
                    INSERT INTO risks
                        (dedup_key, title, description, category, dynamic_state,
                         confidence_score, probability, impact, status, priority,
                         enrichment_summary, threat_intel_sources,
                         framework_mappings, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        risk.dedup_key,
                        risk.title,
                        risk.description,
                        risk.category,
                        risk.dynamic_state.value if risk.dynamic_state else None,
                        risk.confidence_score,
                        risk.probability,
                        risk.impact,
                        risk.status,
                        risk.priority,
                        risk.enrichment_summary,
                        json.dumps([r.to_dict() for r in risk.threat_intel_sources]),
                        json.dumps([m.to_dict() for m in risk.framework_mappings]),
                        now.isoformat(),
                        now.isoformat(),
                    ),
                )
                risk_id = cursor.lastrowid
                self._insert_transition(risk_id, transition)
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        return self.get_risk(risk_id)

    def get_risk(self, risk_id: int) -> Optional[DynamicRisk]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM risks WHERE id = ?", (risk_id,)).fetchone()
        return self._row_to_risk(row) if row else None

    def find_by_dedup_key(self, dedup_key: str) -> Optional[DynamicRisk]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM risks WHERE dedup_key = ?", (dedup_key,)
            ).fetchone()
        return self._row_to_risk(row) if row else None

    def list_risks(
        self,
        state: Optional[DynamicState] = None,
        min_confidence: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[DynamicRisk]:
        """Risks ordered by confidence (highest first), then age."""
        query = "SELECT * FROM risks WHERE 1 = 1"
        params: List[Any] = []
        if state is not None:
            query += " AND dynamic_state = ?"
            params.append(DynamicState(state).value)
        if min_confidence is not None:
            query += " AND confidence_score >= ?"
            params.append(min_confidence)
        query += " ORDER BY confidence_score DESC, id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_risk(row) for row in rows]

    def update_state(
        self,
        risk_id: int,
        expected_state: Optional[DynamicState],
        transition: StateTransition,
    ) -> bool:
        """Move a risk to ``transition.to_state`` if it is still in
        ``expected_state``. Returns False when the state changed underneath."""
        with self._lock:
            try:
                cursor = self._conn.execute(
                    """
                    UPDATE risks SET dynamic_state = ?, updated_at = ?
                    WHERE id = ? AND dynamic_state IS ?
                    """,
                    (
                        transition.to_state.value,
                        transition.timestamp.isoformat(),
                        risk_id,
                        expected_state.value if expected_state else None,
                    ),
                )
                if cursor.rowcount == 0:
                    self._conn.rollback()
                    return False
                self._insert_transition(risk_id, transition)
                self._conn.commit()
                return True
            except Exception:
                self._conn.rollback()
                raise

    def merge_source(
        self,
        risk_id: int,
        record: TISourceRecord,
        confidence_score: Optional[float] = None,
    ) -> Optional[DynamicRisk]:
        """Append a TI source record and optionally raise the confidence.

        The confidence is only written when strictly greater than the
        stored value.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT threat_intel_sources, confidence_score FROM risks WHERE id = ?",
                (risk_id,),
            ).fetchone()
            if row is None:
                return None
            sources = json.loads(row["threat_intel_sources"] or "[]")
            sources.append(record.to_dict())
            confidence = row["confidence_score"]
            if confidence_score is not None and confidence_score > confidence:
                confidence = confidence_score
            self._conn.execute(
                """
                UPDATE risks
                SET threat_intel_sources = ?, confidence_score = ?, updated_at = ?
                WHERE id = ?
                """,
                (json.dumps(sources), confidence, _iso(utcnow()), risk_id),
            )
            self._conn.commit()
        return self.get_risk(risk_id)

    def raise_assessment(
        self,
        risk_id: int,
        confidence_score: Optional[float] = None,
        priority: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Optional[DynamicRisk]:
        """Write a new confidence and/or priority and append ``note`` to the
        enrichment summary. The caller decides whether the values are
        higher; the store writes what it is given."""
        with self._lock:
            row = self._conn.execute(
                "SELECT confidence_score, priority, enrichment_summary FROM risks WHERE id = ?",
                (risk_id,),
            ).fetchone()
            if row is None:
                return None
            summary = row["enrichment_summary"]
            if note and note not in summary:
                summary = f"{summary} {note}".strip()
            self._conn.execute(
                """
                UPDATE risks
                SET confidence_score = ?, priority = ?, enrichment_summary = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    row["confidence_score"] if confidence_score is None else confidence_score,
                    row["priority"] if priority is None else priority,
                    summary,
                    _iso(utcnow()),
                    risk_id,
                ),
            )
            self._conn.commit()
        return self.get_risk(risk_id)

    def state_counts(self) -> Dict[str, int]:
        """Risk count per dynamic state plus ``total``."""
        counts = {state.value: 0 for state in DynamicState}
        total = 0
        with self._lock:
            rows = self._conn.execute(
                "SELECT dynamic_state, COUNT(*) AS count FROM risks GROUP BY dynamic_state"
            ).fetchall()
        for row in rows:
            if row["dynamic_state"] in counts:
                counts[row["dynamic_state"]] = row["count"]
            total += row["count"]
        counts["total"] = total
        return counts

    @staticmethod
    def _row_to_risk(row) -> DynamicRisk:
        state = row["dynamic_state"]
        return DynamicRisk(
            id=row["id"],
            dedup_key=row["dedup_key"],
            title=row["title"],
            description=row["description"],
            category=row["category"],
            dynamic_state=DynamicState(state) if state else None,
            confidence_score=row["confidence_score"],
            probability=row["probability"],
            impact=row["impact"],
            status=row["status"],
            priority=row["priority"],
            enrichment_summary=row["enrichment_summary"],
            threat_intel_sources=[
                TISourceRecord.from_dict(item)
                for item in json.loads(row["threat_intel_sources"] or "[]")
            ],
            framework_mappings=[
                FrameworkMapping.from_dict(item)
                for item in json.loads(row["framework_mappings"] or "[]")
            ],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _insert_transition(self, risk_id: int, transition: StateTransition) -> None:
        self._conn.execute(
            """
            INSERT INTO risk_state_transitions
                (risk_id, previous_state, current_state, reason, automated,
                 actor, confidence_change, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                risk_id,
                transition.from_state.value if transition.from_state else None,
                transition.to_state.value,
                transition.reason,
                1 if transition.automated else 0,
                transition.actor,
                transition.confidence_change,
                transition.timestamp.isoformat(),
            ),
        )

    def transitions(self, risk_id: int) -> List[StateTransition]:
        """Lifecycle history of a risk, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM risk_state_transitions WHERE risk_id = ? ORDER BY id ASC",
                (risk_id,),
            ).fetchall()
        return [
            StateTransition(
                risk_id=row["risk_id"],
                from_state=DynamicState(row["previous_state"]) if row["previous_state"] else None,
                to_state=DynamicState(row["current_state"]),
                reason=row["reason"],
                automated=bool(row["automated"]),
                actor=row["actor"],
                timestamp=parse_timestamp(row["created_at"]),
                confidence_change=row["confidence_change"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Processing log
    # ------------------------------------------------------------------

    def log_decision(
        self,
        connector_id: str,
        indicator: Indicator,
        decision: str,
        risk_id: Optional[int] = None,
        reason: str = "",
        run_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO processing_log
                    (run_id, connector_id, indicator_id, indicator_value,
                     decision, risk_id, reason, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    connector_id,
                    indicator.id,
                    indicator.value,
                    decision,
                    risk_id,
                    reason,
                    (timestamp or utcnow()).isoformat(),
                ),
            )
            self._conn.commit()

    def processing_log(
        self,
        connector_id: Optional[str] = None,
        indicator_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM processing_log WHERE 1 = 1"
        params: List[Any] = []
        if connector_id is not None:
            query += " AND connector_id = ?"
            params.append(connector_id)
        if indicator_id is not None:
            query += " AND indicator_id = ?"
            params.append(indicator_id)
        query += " ORDER BY id ASC"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Indicators
    # ------------------------------------------------------------------

    def save_indicators(self, indicators: Iterable[Indicator], run_id: Optional[str] = None) -> int:
        """Upsert indicators, tagging each with ``run_id``. Returns count."""
        now = utcnow().isoformat()
        count = 0
        with self._lock:
            for indicator in indicators:
                self._conn.execute(
                    """
                    INSERT INTO indicators (id, source, type, value, payload, run_id, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        payload = excluded.payload,
                        run_id = excluded.run_id,
                        updated_at = excluded.updated_at
                    """,
                    (
                        indicator.id,
                        indicator.source,
                        indicator.type.value,
                        indicator.value,
                        json.dumps(indicator.to_dict()),
                        run_id,
                        now,
                    ),
                )
                count += 1
            self._conn.commit()
        return count

    def load_indicators(self, run_id: Optional[str] = None) -> List[Indicator]:
        """Stored indicators, optionally only those last seen by ``run_id``."""
        query = "SELECT payload FROM indicators"
        params: List[Any] = []
        if run_id is not None:
            query += " WHERE run_id = ?"
            params.append(run_id)
        query += " ORDER BY id ASC"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [Indicator.from_dict(json.loads(row["payload"])) for row in rows]

    def last_run_id(self) -> Optional[str]:
        """Run id of the most recently stored indicators."""
        with self._lock:
            row = self._conn.execute(
                """
                SELECT run_id FROM indicators
                WHERE run_id IS NOT NULL
                ORDER BY updated_at DESC, rowid DESC LIMIT 1
                """
            ).fetchone()
        return row["run_id"] if row else None

    # ------------------------------------------------------------------
    # Scores
    # ------------------------------------------------------------------

    def save_score(self, score: Any) -> None:
        """Append one contextual score (a ContextualRiskScore)."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO risk_scores
                    (risk_id, base_score, final_score, confidence_level, payload, calculated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    score.risk_id,
                    score.base_score,
                    score.final_score,
                    score.confidence_level,
                    json.dumps(score.to_dict()),
                    score.calculated_at.isoformat(),
                ),
            )
            self._conn.commit()

    def score_history(self, risk_id: int, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Stored scores of a risk, oldest first; ``limit`` keeps the newest."""
        query = "SELECT payload FROM risk_scores WHERE risk_id = ? ORDER BY id DESC"
        params: List[Any] = [risk_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [json.loads(row["payload"]) for row in reversed(rows)]

    def latest_score(self, risk_id: int) -> Optional[Dict[str, Any]]:
        history = self.score_history(risk_id, limit=1)
        return history[0] if history else None

    # ------------------------------------------------------------------
    # Correlation links
    # ------------------------------------------------------------------

    def link_cluster(self, risk_id: int, cluster: Any, linked_at: Optional[datetime] = None) -> bool:
        """Record that ``cluster`` (a CorrelationCluster) holds one of the
        risk's indicators. Returns False when the link already exists."""
        attribution = cluster.attribution
        actor = attribution.actor if attribution is not None and attribution.attributed else None
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO risk_clusters
                    (risk_id, cluster_id, run_id, cluster_type, label,
                     cluster_confidence, risk_level, actor, linked_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    risk_id,
                    cluster.cluster_id,
                    cluster.run_id,
                    cluster.cluster_type.value,
                    cluster.label,
                    cluster.cluster_confidence,
                    cluster.risk_level.value,
                    actor,
                    (linked_at or utcnow()).isoformat(),
                ),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def risk_clusters(self, risk_id: int) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM risk_clusters WHERE risk_id = ? ORDER BY linked_at ASC, cluster_id ASC",
                (risk_id,),
            ).fetchall()
        return [dict(row) for row in rows]
