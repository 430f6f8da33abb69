"""
Confidence service: read-time scoring and the scheduled recalculation sweep.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from ..merge.provenance import ACCEPTANCES, ProvenanceMergeEngine, RecordResult
from ..merge.tiers import DEFAULT_TIER, SourceTier
from ..storage.cursor import KeysetCursor
from ..storage.database import ProviderStore, format_timestamp, parse_timestamp, utc_now
from .confidence import ConfidenceResult, VerificationEvent, confidence_from_events

logger = logging.getLogger(__name__)


@dataclass
class LiveSignal:
    count: int
    upvotes: int
    downvotes: int
    last_verified: Optional[datetime]

    @property
    def net_votes(self) -> int:
        return self.upvotes - self.downvotes


@dataclass
class AcceptanceView:
    acceptance_id: int
    npi: str
    plan_id: str
    location_id: Optional[int]
    acceptance_status: str
    stored_score: int
    confidence: ConfidenceResult
    verification_count: int
    live_verifications: int
    expired: bool

    @property
    def score(self) -> int:
        return self.confidence.score


@dataclass
class SweepReport:
    dry_run: bool = True
    processed: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "dry_run": self.dry_run,
            "processed": self.processed,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "errors": self.errors,
        }

    def print_summary(self):
        print("\n" + "=" * 50)
        print(f"CONFIDENCE RECALCULATION SUMMARY{' (DRY RUN)' if self.dry_run else ''}")
        print("=" * 50)
        print(f"Records inspected: {self.processed:,}")
        print(f"Records changed: {self.updated:,}")
        print(f"Records unchanged: {self.unchanged:,}")
        print(f"Errors: {self.errors:,}")
        print(f"Duration: {self.duration_seconds:.2f} seconds")
        print("=" * 50)


class ConfidenceService:
    """
    Scores plan acceptances from their live verification signal.

    Expired verification events are excluded from every aggregate but are
    never deleted here.
    """

    def __init__(self, store: ProviderStore, merge_engine: Optional[ProvenanceMergeEngine] = None,
                 config: Optional[Dict] = None):
        """
        Initialize confidence service.

        Args:
            store: Relational store
            merge_engine: Used for tier-protected confidence imports
            config: Full configuration dictionary
        """
        confidence_config = (config or {}).get("confidence", {})
        self.store = store
        self.merge_engine = merge_engine or ProvenanceMergeEngine(store, config)
        self.sweep_batch_size = confidence_config.get("sweep_batch_size", 100)

    def live_signal(self, npi: str, plan_id: str, now: datetime) -> LiveSignal:
        """Aggregate non-expired verification events for a (provider, plan) key."""
        row = self.store.fetchone(
            '''
            SELECT COUNT(*) AS n,
                   COALESCE(SUM(upvotes), 0) AS up,
                   COALESCE(SUM(downvotes), 0) AS down,
                   MAX(created_at) AS last_verified
            FROM verification_logs
            WHERE npi = ? AND plan_id = ?
              AND (expires_at IS NULL OR expires_at > ?)
            ''',
            (npi, plan_id, format_timestamp(now)),
        )
        return LiveSignal(row["n"], row["up"], row["down"], parse_timestamp(row["last_verified"]))

    def verification_events(self, npi: str, plan_id: str) -> List[VerificationEvent]:
        """Every verification event for a (provider, plan) key, expired ones included."""
        rows = self.store.fetchall(
            '''
            SELECT created_at, expires_at, upvotes, downvotes
            FROM verification_logs
            WHERE npi = ? AND plan_id = ?
            ORDER BY created_at, id
            ''',
            (npi, plan_id),
        )
        return [
            VerificationEvent(parse_timestamp(row["created_at"]), parse_timestamp(row["expires_at"]),
                              row["upvotes"], row["downvotes"])
            for row in rows
        ]

    def source_tier(self, acceptance: sqlite3.Row) -> SourceTier:
        """Tier that created the acceptance; crowd writes to the score do not change it."""
        source = acceptance["origin_source"]
        return SourceTier.parse(source) if source else DEFAULT_TIER

    def _specialty(self, npi: str) -> Optional[str]:
        provider = self.store.get_provider(npi)
        if provider is None:
            return None
        return provider["primary_specialty"] or provider["primary_taxonomy_code"]

    def score_acceptance(self, acceptance: sqlite3.Row, now: datetime) -> ConfidenceResult:
        return confidence_from_events(
            self.verification_events(acceptance["npi"], acceptance["plan_id"]),
            self.source_tier(acceptance),
            now,
            self._specialty(acceptance["npi"]),
        )

    def get_acceptance(self, npi: str, plan_id: str, location_id: Optional[int] = None,
                       now: Optional[datetime] = None) -> Optional[AcceptanceView]:
        """
        Read an acceptance with its confidence recomputed for ``now``.

        Nothing is written; the stored score is only refreshed by the sweep
        or by a new verification.
        """
        now = now or utc_now()
        acceptance = self.store.find_acceptance(npi, plan_id, location_id)
        if acceptance is None:
            return None

        signal = self.live_signal(npi, plan_id, now)
        result = self.score_acceptance(acceptance, now)
        expires_at = parse_timestamp(acceptance["expires_at"])
        return AcceptanceView(
            acceptance_id=acceptance["id"],
            npi=npi,
            plan_id=plan_id,
            location_id=acceptance["location_id"],
            acceptance_status=acceptance["acceptance_status"],
            stored_score=acceptance["confidence_score"],
            confidence=result,
            verification_count=acceptance["verification_count"],
            live_verifications=signal.count,
            expired=expires_at is not None and expires_at <= now,
        )

    def store_score(self, acceptance_id: int, score: int, now: datetime):
        self.store.execute(
            "UPDATE provider_plan_acceptance SET confidence_score = ?, updated_at = ? WHERE id = ?",
            (score, format_timestamp(now), acceptance_id),
        )

    def recalculate_all(self, dry_run: bool = True, limit: Optional[int] = None,
                        batch_size: Optional[int] = None,
                        now: Optional[datetime] = None) -> SweepReport:
        """
        Recompute stored scores for every acceptance with at least one verification.

        Args:
            dry_run: Count changes without writing
            limit: Maximum number of acceptances to inspect
            batch_size: Rows per cursor page
            now: Reference time shared by the whole sweep

        Returns:
            SweepReport with inspected/changed/unchanged counts
        """
        now = now or utc_now()
        report = SweepReport(dry_run=dry_run)
        started = utc_now()
        cursor = KeysetCursor(
            self.store, ACCEPTANCES, "id", where="verification_count >= 1",
            batch_size=batch_size or self.sweep_batch_size, limit=limit,
        )
        logger.info(f"Starting confidence recalculation (dry_run={dry_run}, limit={limit})")

        for acceptance in cursor:
            report.processed += 1
            try:
                score = self.score_acceptance(acceptance, now).score
                if score == acceptance["confidence_score"]:
                    report.unchanged += 1
                    continue
                if not dry_run:
                    with self.store.transaction():
                        self.store_score(acceptance["id"], score, now)
                report.updated += 1
                logger.debug(f"Acceptance {acceptance['id']}: "
                             f"{acceptance['confidence_score']} -> {score}")
            except sqlite3.IntegrityError as e:
                report.errors += 1
                logger.error(f"Failed to update acceptance {acceptance['id']}: {e}")

            if report.processed % 1000 == 0:
                logger.info(f"Recalculated {report.processed} acceptances")

        report.duration_seconds = (utc_now() - started).total_seconds()
        logger.info(f"Confidence recalculation done: {report.processed} inspected, "
                    f"{report.updated} changed, {report.unchanged} unchanged, {report.errors} errors")
        return report

    def import_confidence(self, npi: str, plan_id: str, confidence: int, tier: SourceTier,
                          location_id: Optional[int] = None, status: Optional[str] = None,
                          now: Optional[datetime] = None) -> RecordResult:
        """
        Import an externally sourced confidence.

        Goes through the merge engine, so a lower or equal tier can never
        overwrite a crowd-verified score; the attempt is logged as a conflict.
        """
        return self.merge_engine.apply_acceptance(npi, plan_id, location_id, status,
                                                  confidence, tier, now)
