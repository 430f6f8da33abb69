"""
Unit tests for the deactivated-provider cleanup sweep.
"""

import pytest
import shutil
import tempfile
import sys
from datetime import datetime, timezone
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from provider_trust.maintenance.cleanup import DeactivatedProviderCleanup
from provider_trust.merge.provenance import EntityRef, ProvenanceMergeEngine
from provider_trust.merge.tiers import SourceTier
from provider_trust.scoring.confidence_service import ConfidenceService
from provider_trust.scoring.verification import VerificationService
from provider_trust.storage.database import ProviderStore, format_timestamp

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
INACTIVE = "1000000001"
ACTIVE = "1000000002"


class TestDeactivatedProviderCleanup:
    """Test cases for the cascade delete."""

    def setup_method(self):
        """Setup test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.store = ProviderStore(str(Path(self.temp_dir) / "cleanup.db"))
        engine = ProvenanceMergeEngine(self.store)
        verifications = VerificationService(self.store, ConfidenceService(self.store, engine))

        with self.store.transaction():
            self.store.execute("INSERT INTO insurance_plans (plan_id, carrier) VALUES ('P1', 'Aetna')")

        engine.apply_record(EntityRef.provider(INACTIVE),
                            {"last_name": "Smith", "primary_specialty": "Cardiology",
                             "deactivation_date": "2025-03-01"},
                            SourceTier.REGISTRY, NOW)
        engine.apply_record(EntityRef.provider(ACTIVE), {"last_name": "Doe"}, SourceTier.REGISTRY, NOW)

        for npi in (INACTIVE, ACTIVE):
            location = engine.upsert_location(
                npi, {"address_line1": "600 N Wolfe St", "city": "Baltimore", "state": "MD",
                      "zip_code": "21287"},
                SourceTier.REGISTRY, NOW,
            )
            verifications.record_verification(npi, "P1", 1, NOW, location_id=int(location.entity.key),
                                              submitted_by="u1")
            self.store.execute(
                "INSERT INTO provider_insurance (npi, network_name, created_at) VALUES (?, 'Aetna', ?)",
                (npi, format_timestamp(NOW)),
            )

        self.cleanup = DeactivatedProviderCleanup(self.store)

    def teardown_method(self):
        """Cleanup test fixtures."""
        self.store.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def count(self, table, npi):
        return self.store.fetchone(f"SELECT COUNT(*) AS n FROM {table} WHERE npi = ?", (npi,))["n"]

    def provenance_count(self):
        return self.store.fetchone("SELECT COUNT(*) AS n FROM field_provenance")["n"]

    def test_dry_run_counts(self):
        """A dry run reports counts and breakdowns without deleting."""
        report = self.cleanup.run(dry_run=True)
        assert report.providers == 1
        assert report.locations == 1
        assert report.acceptances == 1
        assert report.verifications == 1
        assert report.provider_insurance == 1
        assert report.by_state == {"MD": 1}
        assert report.by_specialty == {"Cardiology": 1}
        assert self.store.get_provider(INACTIVE) is not None

    def test_apply_cascades(self):
        """Deactivated providers and all their dependents are removed."""
        provenance_before = self.provenance_count()
        report = self.cleanup.run(dry_run=False)
        assert report.providers == 1

        assert self.store.get_provider(INACTIVE) is None
        for table in ("practice_locations", "provider_plan_acceptance", "verification_logs",
                      "provider_insurance"):
            assert self.count(table, INACTIVE) == 0
            assert self.count(table, ACTIVE) == 1

        assert self.store.get_provider(ACTIVE) is not None
        assert self.store.get_field_source("providers", INACTIVE, "last_name") is None
        assert self.store.get_field_source("providers", ACTIVE, "last_name") == "registry"
        assert self.provenance_count() < provenance_before

    def test_nothing_to_remove(self):
        self.cleanup.run(dry_run=False)
        report = self.cleanup.run(dry_run=False)
        assert report.providers == 0


if __name__ == "__main__":
    pytest.main([__file__])
