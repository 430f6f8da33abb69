"""
Unit tests for crowd verification intake.
"""

import pytest
import shutil
import tempfile
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from provider_trust.errors import DuplicateVerificationError, MergeError
from provider_trust.merge.provenance import EntityRef, ProvenanceMergeEngine
from provider_trust.merge.tiers import SourceTier
from provider_trust.scoring.confidence_service import ConfidenceService
from provider_trust.scoring.verification import (ACCEPTED, NOT_ACCEPTED, PENDING,
                                                 VerificationService)
from provider_trust.storage.database import ProviderStore

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
NPI = "1234567893"


class TestVerificationService:
    """Test cases for verification events, duplicates and consensus."""

    def setup_method(self):
        """Setup test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.store = ProviderStore(str(Path(self.temp_dir) / "verification.db"))
        self.config = {"confidence": {"verification_ttl_months": 6, "sybil_window_days": 30}}
        engine = ProvenanceMergeEngine(self.store, self.config)
        engine.apply_record(EntityRef.provider(NPI), {"last_name": "Smith"}, SourceTier.REGISTRY, NOW)
        with self.store.transaction():
            self.store.execute("INSERT INTO insurance_plans (plan_id, carrier) VALUES ('P1', 'Aetna')")
        self.service = VerificationService(
            self.store, ConfidenceService(self.store, engine, self.config), self.config
        )

    def teardown_method(self):
        """Cleanup test fixtures."""
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_first_verification_creates_acceptance(self):
        """Test acceptance creation on the first event."""
        result = self.service.record_verification(NPI, "P1", 1, NOW, submitted_by="u1")
        assert result.created_acceptance
        assert result.acceptance_status == PENDING
        assert result.confidence_score == 85

        acceptance = self.store.get_acceptance(result.acceptance_id)
        assert acceptance["verification_count"] == 1
        assert acceptance["last_verified"] == "2026-01-15T12:00:00"
        assert acceptance["expires_at"] == "2026-07-14T12:00:00"
        assert self.store.get_field_source("provider_plan_acceptance", str(result.acceptance_id),
                                           "confidence_score") == "crowd_verified"

        event = self.store.fetchone("SELECT * FROM verification_logs WHERE id = ?", (result.event_id,))
        assert event["upvotes"] == 1
        assert event["downvotes"] == 0
        assert event["expires_at"] == "2026-07-14T12:00:00"

    def test_negative_weight(self):
        """Test that negative weight is recorded as downvotes."""
        result = self.service.record_verification(NPI, "P1", -2, NOW, submitted_by="u1")
        event = self.store.fetchone("SELECT * FROM verification_logs WHERE id = ?", (result.event_id,))
        assert event["upvotes"] == 0
        assert event["downvotes"] == 2

    def test_duplicate_within_window(self):
        """The same submitter cannot verify the same pair twice within the window."""
        self.service.record_verification(NPI, "P1", 1, NOW, submitted_by="u1", source_ip="10.0.0.1")
        with pytest.raises(DuplicateVerificationError):
            self.service.record_verification(NPI, "P1", 1, NOW + timedelta(days=5), submitted_by="u1")
        with pytest.raises(DuplicateVerificationError):
            self.service.record_verification(NPI, "P1", 1, NOW + timedelta(days=5), source_ip="10.0.0.1")

        count = self.store.fetchone("SELECT COUNT(*) AS n FROM verification_logs")["n"]
        assert count == 1

    def test_duplicate_after_window(self):
        """Test that the window expires."""
        self.service.record_verification(NPI, "P1", 1, NOW, submitted_by="u1")
        result = self.service.record_verification(NPI, "P1", 1, NOW + timedelta(days=31), submitted_by="u1")
        assert not result.created_acceptance

    def test_anonymous_events_are_not_deduplicated(self):
        self.service.record_verification(NPI, "P1", 1, NOW)
        self.service.record_verification(NPI, "P1", 1, NOW)
        count = self.store.fetchone("SELECT COUNT(*) AS n FROM verification_logs")["n"]
        assert count == 2

    def test_consensus_accepts(self):
        """Three agreeing live verifications move the status to ACCEPTED."""
        first = self.service.record_verification(NPI, "P1", 1, NOW, submitted_by="u1")
        second = self.service.record_verification(NPI, "P1", 1, NOW, submitted_by="u2")
        third = self.service.record_verification(NPI, "P1", 1, NOW, submitted_by="u3")

        assert first.acceptance_status == PENDING
        assert second.acceptance_status == PENDING
        assert third.acceptance_status == ACCEPTED
        assert third.status_changed
        assert third.confidence_score == 100
        assert self.store.get_acceptance(third.acceptance_id)["verification_count"] == 3

    def test_consensus_rejects(self):
        """Three disagreeing verifications move the status to NOT_ACCEPTED."""
        self.service.record_verification(NPI, "P1", -1, NOW, submitted_by="u1")
        self.service.record_verification(NPI, "P1", -1, NOW, submitted_by="u2")
        self.service.record_verification(NPI, "P1", -1, NOW, submitted_by="u3")
        self.service.record_verification(NPI, "P1", 1, NOW, submitted_by="u4")

        acceptance = self.store.find_acceptance(NPI, "P1")
        # 25 source + 30 recency + 25 count + 0 agreement
        assert acceptance["confidence_score"] == 80
        assert acceptance["acceptance_status"] == NOT_ACCEPTED

    def test_split_vote_keeps_status(self):
        """Without a two-to-one majority the status stands."""
        for user, weight in (("u1", 2), ("u2", -1), ("u3", -2)):
            result = self.service.record_verification(NPI, "P1", weight, NOW, submitted_by=user)
        assert result.confidence_score >= 60
        assert result.acceptance_status == PENDING
        assert not result.status_changed

    def test_unknown_provider_or_plan(self):
        """Test that events for unknown keys are refused."""
        with pytest.raises(MergeError):
            self.service.record_verification("9999999999", "P1", 1, NOW)
        with pytest.raises(MergeError):
            self.service.record_verification(NPI, "P9", 1, NOW)
        assert self.store.fetchone("SELECT COUNT(*) AS n FROM provider_plan_acceptance")["n"] == 0

    def test_zero_weight(self):
        with pytest.raises(ValueError):
            self.service.record_verification(NPI, "P1", 0, NOW)

    def test_consensus_revises_crowd_status(self):
        """Crowd consensus can overturn a status that an earlier crowd source set."""
        engine = self.service.confidence_service.merge_engine
        engine.apply_acceptance(NPI, "P1", None, ACCEPTED, 70, SourceTier.CROWD_VERIFIED, NOW)
        for user in ("u1", "u2", "u3"):
            result = self.service.record_verification(NPI, "P1", -1, NOW, submitted_by=user)

        assert result.status_changed
        assert result.acceptance_status == NOT_ACCEPTED
        assert self.store.find_acceptance(NPI, "P1")["acceptance_status"] == NOT_ACCEPTED
        assert self.store.get_field_source("provider_plan_acceptance", str(result.acceptance_id),
                                           "acceptance_status") == "crowd_verified"
        assert self.store.count_import_conflicts() == 0

    def test_consensus_outranks_lower_tier_status(self):
        """A status from a bulk import is replaced by crowd consensus."""
        engine = self.service.confidence_service.merge_engine
        engine.apply_acceptance(NPI, "P1", None, NOT_ACCEPTED, 40, SourceTier.BULK_SCRAPE, NOW)
        for user in ("u1", "u2", "u3"):
            result = self.service.record_verification(NPI, "P1", 1, NOW, submitted_by=user)

        assert result.acceptance_status == ACCEPTED
        # 10 bulk source + 30 recency + 25 count + 20 agreement
        assert result.confidence_score == 85


if __name__ == "__main__":
    pytest.main([__file__])
