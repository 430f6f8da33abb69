"""
Crowd verification intake.

Stores immutable verification events, creates the plan acceptance on first
signal, refreshes its stored confidence and moves its status once the crowd
reaches a clear consensus.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from ..errors import DuplicateVerificationError, MergeError
from ..merge.provenance import ACCEPTANCES, EntityRef, MergeOutcome
from ..merge.tiers import SourceTier
from ..storage.database import ProviderStore, expiry_after, format_timestamp, parse_timestamp, utc_now
from .confidence import TIER_DEFAULT_CONFIDENCE
from .confidence_service import ConfidenceService, LiveSignal

logger = logging.getLogger(__name__)

PENDING = "PENDING"
ACCEPTED = "ACCEPTED"
NOT_ACCEPTED = "NOT_ACCEPTED"


@dataclass
class VerificationResult:
    event_id: int
    acceptance_id: int
    created_acceptance: bool
    confidence_score: int
    acceptance_status: str
    status_changed: bool


class VerificationService:
    """
    Accepts (provider, plan, vote weight, timestamp) events.

    Positive weight is evidence the provider accepts the plan, negative
    weight evidence that it does not.
    """

    def __init__(self, store: ProviderStore, confidence_service: ConfidenceService,
                 config: Optional[Dict] = None):
        """
        Initialize verification service.

        Args:
            store: Relational store
            confidence_service: Scores the acceptance after each event
            config: Full configuration dictionary
        """
        confidence_config = (config or {}).get("confidence", {})
        self.store = store
        self.confidence_service = confidence_service
        self.ttl_months = confidence_config.get("verification_ttl_months", 6)
        self.sybil_window_days = confidence_config.get("sybil_window_days", 30)
        self.min_verifications = confidence_config.get("min_verifications_for_consensus", 3)
        self.min_confidence = confidence_config.get("min_confidence_for_status_change", 60)

    def _check_duplicate(self, npi: str, plan_id: str, submitted_by: Optional[str],
                         source_ip: Optional[str], created_at: datetime):
        if not submitted_by and not source_ip:
            return
        since = format_timestamp(created_at - timedelta(days=self.sybil_window_days))
        row = self.store.fetchone(
            '''
            SELECT id FROM verification_logs
            WHERE npi = ? AND plan_id = ? AND created_at >= ?
              AND ((? IS NOT NULL AND source_ip = ?) OR (? IS NOT NULL AND submitted_by = ?))
            LIMIT 1
            ''',
            (npi, plan_id, since, source_ip, source_ip, submitted_by, submitted_by),
        )
        if row is not None:
            raise DuplicateVerificationError(
                f"{npi}/{plan_id} already verified by this submitter in the last "
                f"{self.sybil_window_days} days"
            )

    def consensus_status(self, current_status: str, signal: LiveSignal, score: int) -> str:
        """
        Status implied by the live signal.

        Requires enough live verifications, a minimum score and a 2:1
        majority; otherwise the current status stands.
        """
        if signal.count < self.min_verifications or score < self.min_confidence:
            return current_status
        if signal.upvotes > signal.downvotes and signal.upvotes >= 2 * signal.downvotes:
            return ACCEPTED
        if signal.downvotes > signal.upvotes and signal.downvotes >= 2 * signal.upvotes:
            return NOT_ACCEPTED
        return current_status

    def record_verification(self, npi: str, plan_id: str, weight: int,
                            created_at: Optional[datetime] = None,
                            location_id: Optional[int] = None,
                            submitted_by: Optional[str] = None,
                            source_ip: Optional[str] = None) -> VerificationResult:
        """
        Record one crowd verification event.

        Args:
            npi: Provider
            plan_id: Insurance plan
            weight: Signed vote weight; must be non-zero
            created_at: Event time, defaults to now
            location_id: Practice location for a location-specific acceptance
            submitted_by: Submitter identity for the duplicate window
            source_ip: Submitter address for the duplicate window

        Returns:
            VerificationResult

        Raises:
            DuplicateVerificationError: Same submitter within the window
            MergeError: Unknown provider or plan
        """
        if not weight:
            raise ValueError("Verification weight must be non-zero")
        created_at = created_at or utc_now()
        crowd = SourceTier.CROWD_VERIFIED.label

        with self.store.transaction():
            if self.store.get_provider(npi) is None:
                raise MergeError(f"Unknown provider {npi}")
            if self.store.fetchone("SELECT 1 FROM insurance_plans WHERE plan_id = ?", (plan_id,)) is None:
                raise MergeError(f"Unknown plan {plan_id}")
            self._check_duplicate(npi, plan_id, submitted_by, source_ip, created_at)

            acceptance = self.store.find_acceptance(npi, plan_id, location_id)
            created = acceptance is None
            if created:
                acceptance_id = self.store.insert_acceptance(
                    npi, plan_id, location_id, PENDING,
                    TIER_DEFAULT_CONFIDENCE[SourceTier.CROWD_VERIFIED],
                    expiry_after(created_at, self.ttl_months), created_at, origin_source=crowd,
                )
                self.store.set_field_source(ACCEPTANCES, acceptance_id, "acceptance_status", crowd, created_at)
            else:
                acceptance_id = acceptance["id"]
            # From the first crowd signal on, imports can no longer lower the score
            self.store.set_field_source(ACCEPTANCES, acceptance_id, "confidence_score", crowd, created_at)

            cursor = self.store.execute(
                '''
                INSERT INTO verification_logs
                    (npi, plan_id, acceptance_id, upvotes, downvotes, submitted_by,
                     source_ip, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''',
                (npi, plan_id, acceptance_id, max(weight, 0), max(-weight, 0), submitted_by,
                 source_ip, format_timestamp(created_at),
                 format_timestamp(expiry_after(created_at, self.ttl_months))),
            )
            event_id = cursor.lastrowid

            acceptance = self.store.get_acceptance(acceptance_id)
            last_verified = parse_timestamp(acceptance["last_verified"])
            if last_verified is None or created_at > last_verified:
                last_verified = created_at

            signal = self.confidence_service.live_signal(npi, plan_id, created_at)
            score = self.confidence_service.score_acceptance(acceptance, created_at).score
            status = self.consensus_status(acceptance["acceptance_status"], signal, score)

            # The score is recomputed from the whole signal and may go down, so it
            # is written directly rather than through the tier rule
            self.store.execute(
                '''
                UPDATE provider_plan_acceptance
                SET verification_count = verification_count + 1, last_verified = ?,
                    confidence_score = ?, updated_at = ?
                WHERE id = ?
                ''',
                (format_timestamp(last_verified), score, format_timestamp(created_at), acceptance_id),
            )

            status_changed = False
            if status != acceptance["acceptance_status"]:
                decision = self.confidence_service.merge_engine.apply(
                    EntityRef.acceptance(acceptance_id, npi), "acceptance_status", status,
                    SourceTier.CROWD_VERIFIED, created_at, same_tier_revises=True,
                )
                status_changed = decision.outcome == MergeOutcome.APPLIED
            if status_changed:
                logger.info(f"Acceptance {acceptance_id} ({npi}/{plan_id}) "
                            f"{acceptance['acceptance_status']} -> {status}")

        final_status = status if status_changed else acceptance["acceptance_status"]
        return VerificationResult(event_id, acceptance_id, created, score, final_status, status_changed)
