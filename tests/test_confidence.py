"""
Unit tests for confidence scoring and the recalculation sweep.
"""

import pytest
import shutil
import tempfile
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from provider_trust.merge.provenance import EntityRef, ProvenanceMergeEngine
from provider_trust.merge.tiers import SourceTier
from provider_trust.scoring.confidence import (TIER_DEFAULT_CONFIDENCE, ConfidenceInputs,
                                               ConfidenceLevel, SpecialtyCategory, VerificationEvent,
                                               classify_specialty, compute_confidence,
                                               confidence_from_events, confidence_level,
                                               inputs_at, recency_points)
from provider_trust.scoring.confidence_service import ConfidenceService
from provider_trust.scoring.verification import VerificationService
from provider_trust.storage.database import ProviderStore, expiry_after

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
NPI = "1234567893"

CONFIG = {
    "confidence": {
        "verification_ttl_months": 6,
        "sweep_batch_size": 2,
        "sybil_window_days": 30,
        "min_verifications_for_consensus": 3,
        "min_confidence_for_status_change": 60,
    }
}


class TestComputeConfidence:
    """Test cases for the pure scoring function."""

    def test_no_live_verifications_uses_tier_default(self):
        """Test tier defaults."""
        for tier, expected in TIER_DEFAULT_CONFIDENCE.items():
            result = compute_confidence(ConfidenceInputs(source_tier=tier), NOW)
            assert result.score == expected
            assert result.used_default
            assert result.recommend_reverification

    def test_full_score(self):
        """Fresh unanimous crowd verification scores 100."""
        inputs = ConfidenceInputs(SourceTier.CROWD_VERIFIED, live_verifications=3, upvotes=3,
                                  downvotes=0, last_verified=NOW)
        result = compute_confidence(inputs, NOW)
        assert result.score == 100
        assert result.level == ConfidenceLevel.VERY_HIGH
        assert not result.is_stale

    def test_few_verifications_cap_level(self):
        """Fewer than three verifications never rate above MEDIUM."""
        inputs = ConfidenceInputs(SourceTier.CROWD_VERIFIED, live_verifications=1, upvotes=1,
                                  downvotes=0, last_verified=NOW)
        result = compute_confidence(inputs, NOW)
        assert result.score == 85
        assert result.level == ConfidenceLevel.MEDIUM

    def test_score_is_bounded(self):
        """Scores stay in [0, 100] across inputs."""
        for tier in SourceTier:
            for count in (1, 2, 5, 50):
                for up, down in ((0, 0), (count, 0), (0, count), (count, count)):
                    for days in (0, 10, 45, 100, 400):
                        inputs = ConfidenceInputs(tier, count, up, down, NOW - timedelta(days=days),
                                                  "Psychiatry")
                        score = compute_confidence(inputs, NOW).score
                        assert 0 <= score <= 100
                        assert isinstance(score, int)

    def test_decay_is_monotonic(self):
        """Older verifications never score higher than newer ones."""
        for specialty in (None, "Psychiatry", "Family Medicine", "Radiology", "Cardiology"):
            previous = None
            for days in range(0, 400):
                inputs = ConfidenceInputs(SourceTier.CROWD_VERIFIED, 3, 3, 0,
                                          NOW - timedelta(days=days), specialty)
                score = compute_confidence(inputs, NOW).score
                if previous is not None:
                    assert score <= previous
                previous = score

    def test_recency_steps(self):
        """Test recency steps for a thirty day threshold."""
        assert recency_points(0, 30) == 30
        assert recency_points(15, 30) == 30
        assert recency_points(16, 30) == 20
        assert recency_points(30, 30) == 20
        assert recency_points(45, 30) == 10
        assert recency_points(46, 30) == 5
        assert recency_points(181, 30) == 0

    def test_classify_specialty(self):
        """Test specialty keyword classification."""
        assert classify_specialty("Psychiatry & Neurology") == SpecialtyCategory.MENTAL_HEALTH
        assert classify_specialty("Family Medicine") == SpecialtyCategory.PRIMARY_CARE
        assert classify_specialty("Diagnostic Radiology") == SpecialtyCategory.HOSPITAL_BASED
        assert classify_specialty("Cardiology") == SpecialtyCategory.SPECIALIST
        assert classify_specialty(None) == SpecialtyCategory.OTHER

    def test_confidence_levels(self):
        """Test level bands."""
        assert confidence_level(95, 5) == ConfidenceLevel.VERY_HIGH
        assert confidence_level(80, 5) == ConfidenceLevel.HIGH
        assert confidence_level(60, 1) == ConfidenceLevel.MEDIUM
        assert confidence_level(30, 0) == ConfidenceLevel.LOW
        assert confidence_level(10, 0) == ConfidenceLevel.VERY_LOW

    def test_expiry_never_raises_score(self):
        """A lone downvote expiring does not lift the score to the higher tier default."""
        t0 = NOW - timedelta(days=400)
        events = [VerificationEvent(t0, expiry_after(t0, 6), upvotes=0, downvotes=1)]

        before = confidence_from_events(events, SourceTier.CROWD_VERIFIED, t0 + timedelta(days=179))
        after = confidence_from_events(events, SourceTier.CROWD_VERIFIED, t0 + timedelta(days=181))
        # 25 source + 5 recency + 10 count + 0 agreement
        assert before.score == 40
        assert after.score <= before.score
        assert after.score == 40
        assert after.used_default

    def test_history_decay_is_monotonic(self):
        """Partial expiries between new events never push the score up."""
        t0 = NOW - timedelta(days=400)
        t1 = t0 + timedelta(days=10)
        events = [
            VerificationEvent(t0, expiry_after(t0, 6), upvotes=0, downvotes=1),
            VerificationEvent(t1, expiry_after(t1, 6), upvotes=1, downvotes=0),
        ]

        previous = None
        for day in range(10, 400):
            at = t0 + timedelta(days=day)
            score = confidence_from_events(events, SourceTier.CROWD_VERIFIED, at).score
            if previous is not None:
                assert score <= previous
            previous = score

        # Once the downvote expires the live signal alone would score higher
        at = t0 + timedelta(days=181)
        assert compute_confidence(inputs_at(events, SourceTier.CROWD_VERIFIED, at), at).score == 60
        assert confidence_from_events(events, SourceTier.CROWD_VERIFIED, at).score == 50

    def test_new_event_can_raise_score(self):
        t0 = NOW - timedelta(days=100)
        events = [VerificationEvent(t0, expiry_after(t0, 6), upvotes=0, downvotes=1)]
        low = confidence_from_events(events, SourceTier.CROWD_VERIFIED, NOW).score
        events.append(VerificationEvent(NOW, expiry_after(NOW, 6), upvotes=1, downvotes=0))
        assert confidence_from_events(events, SourceTier.CROWD_VERIFIED, NOW).score > low


class TestConfidenceService:
    """Test cases for read-time scoring and the sweep."""

    def setup_method(self):
        """Setup test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.store = ProviderStore(str(Path(self.temp_dir) / "confidence.db"))
        engine = ProvenanceMergeEngine(self.store, CONFIG)
        engine.apply_record(EntityRef.provider(NPI), {"last_name": "Smith"}, SourceTier.REGISTRY, NOW)
        with self.store.transaction():
            self.store.execute("INSERT INTO insurance_plans (plan_id, carrier) VALUES ('P1', 'Aetna')")
            self.store.execute("INSERT INTO insurance_plans (plan_id, carrier) VALUES ('P2', 'Cigna')")
        self.service = ConfidenceService(self.store, engine, CONFIG)
        self.verifications = VerificationService(self.store, self.service, CONFIG)

    def teardown_method(self):
        """Cleanup test fixtures."""
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_expired_verification_falls_back_to_default(self):
        """A seven month old verification under a six month TTL no longer counts."""
        created = NOW - timedelta(days=210)
        self.verifications.record_verification(NPI, "P1", 1, created, submitted_by="u1")

        view = self.service.get_acceptance(NPI, "P1", now=NOW)
        assert view.live_verifications == 0
        assert view.verification_count == 1
        assert view.score == TIER_DEFAULT_CONFIDENCE[SourceTier.CROWD_VERIFIED]
        assert view.confidence.used_default
        assert view.expired

    def test_live_verification_counts(self):
        """A verification inside the TTL feeds the score."""
        self.verifications.record_verification(NPI, "P1", 1, NOW - timedelta(days=1), submitted_by="u1")
        view = self.service.get_acceptance(NPI, "P1", now=NOW)
        assert view.live_verifications == 1
        assert view.score == 85
        assert not view.expired

    def test_read_does_not_write(self):
        """Test that read-time scoring leaves the stored score alone."""
        self.verifications.record_verification(NPI, "P1", 1, NOW - timedelta(days=210), submitted_by="u1")
        before = self.store.find_acceptance(NPI, "P1")["confidence_score"]
        self.service.get_acceptance(NPI, "P1", now=NOW)
        assert self.store.find_acceptance(NPI, "P1")["confidence_score"] == before

    def test_missing_acceptance(self):
        assert self.service.get_acceptance(NPI, "P2", now=NOW) is None

    def test_sweep_is_idempotent(self):
        """A second sweep at the same reference time changes nothing."""
        self.verifications.record_verification(NPI, "P1", 1, NOW - timedelta(days=210), submitted_by="u1")
        self.verifications.record_verification(NPI, "P2", 1, NOW - timedelta(days=2), submitted_by="u1")

        first = self.service.recalculate_all(dry_run=False, now=NOW)
        assert first.processed == 2
        assert first.updated == 1
        assert self.store.find_acceptance(NPI, "P1")["confidence_score"] == 50

        second = self.service.recalculate_all(dry_run=False, now=NOW)
        assert second.processed == 2
        assert second.updated == 0
        assert second.unchanged == 2

    def test_sweep_dry_run(self):
        """Test that a dry run sweep counts but does not write."""
        self.verifications.record_verification(NPI, "P1", 1, NOW - timedelta(days=210), submitted_by="u1")
        report = self.service.recalculate_all(dry_run=True, now=NOW)
        assert report.updated == 1
        assert self.store.find_acceptance(NPI, "P1")["confidence_score"] == 85

    def test_sweep_limit(self):
        """Test that the sweep stops at the limit."""
        self.verifications.record_verification(NPI, "P1", 1, NOW, submitted_by="u1")
        self.verifications.record_verification(NPI, "P2", 1, NOW, submitted_by="u1")
        report = self.service.recalculate_all(dry_run=True, limit=1, now=NOW)
        assert report.processed == 1

    def test_import_cannot_override_crowd_score(self):
        """An enrichment import after crowd signal is logged as a conflict."""
        self.verifications.record_verification(NPI, "P1", 1, NOW, submitted_by="u1")
        result = self.service.import_confidence(NPI, "P1", 99, SourceTier.ENRICHMENT_IMPORT, now=NOW)
        assert result.conflicts == 1
        assert self.store.find_acceptance(NPI, "P1")["confidence_score"] == 85

    def test_score_does_not_rise_across_ttl(self):
        """A downvote expiring leaves the score at its last live value."""
        created = NOW - timedelta(days=181)
        self.verifications.record_verification(NPI, "P1", -1, created, submitted_by="u1")

        before = self.service.get_acceptance(NPI, "P1", now=created + timedelta(days=179))
        after = self.service.get_acceptance(NPI, "P1", now=NOW)
        assert before.live_verifications == 1
        assert after.live_verifications == 0
        assert after.score <= before.score
        assert after.score == 40

    def test_origin_tier_survives_crowd_signal(self):
        """A bulk linked acceptance falls back to its own default once crowd signal expires."""
        linked = NOW - timedelta(days=211)
        acceptance_id = self.store.insert_acceptance(NPI, "P1", None, "PENDING", 40,
                                                     expiry_after(linked, 6), linked,
                                                     origin_source="bulk_scrape")
        self.verifications.record_verification(NPI, "P1", 1, NOW - timedelta(days=210), submitted_by="u1")

        acceptance = self.store.get_acceptance(acceptance_id)
        assert acceptance["origin_source"] == "bulk_scrape"
        assert self.store.get_field_source("provider_plan_acceptance", str(acceptance_id),
                                           "confidence_score") == "crowd_verified"

        view = self.service.get_acceptance(NPI, "P1", now=NOW)
        assert view.live_verifications == 0
        assert view.score == TIER_DEFAULT_CONFIDENCE[SourceTier.BULK_SCRAPE]
        assert view.score == 40


if __name__ == "__main__":
    pytest.main([__file__])
