"""
Deactivated-provider cleanup sweep.

The only path that hard-deletes providers. Dependent verification events,
plan acceptances, field provenance and practice locations go with them, in
one transaction.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict

from ..storage.database import ProviderStore

logger = logging.getLogger(__name__)

DEACTIVATED = "SELECT npi FROM providers WHERE deactivation_date IS NOT NULL AND TRIM(deactivation_date) != ''"


@dataclass
class CleanupReport:
    dry_run: bool = True
    providers: int = 0
    locations: int = 0
    acceptances: int = 0
    verifications: int = 0
    provider_insurance: int = 0
    by_state: Dict[str, int] = field(default_factory=dict)
    by_specialty: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "dry_run": self.dry_run,
            "providers": self.providers,
            "locations": self.locations,
            "acceptances": self.acceptances,
            "verifications": self.verifications,
            "provider_insurance": self.provider_insurance,
        }

    def print_summary(self):
        print("\n" + "=" * 50)
        print(f"DEACTIVATED PROVIDER CLEANUP{' (DRY RUN)' if self.dry_run else ''}")
        print("=" * 50)
        print(f"Providers: {self.providers:,}")
        print(f"Practice locations: {self.locations:,}")
        print(f"Plan acceptances: {self.acceptances:,}")
        print(f"Verification events: {self.verifications:,}")
        print(f"Network name observations: {self.provider_insurance:,}")
        if self.by_state:
            print("By state:")
            for state, count in sorted(self.by_state.items(), key=lambda kv: -kv[1]):
                print(f"  {state}: {count:,}")
        if self.by_specialty:
            print("By specialty:")
            for specialty, count in sorted(self.by_specialty.items(), key=lambda kv: -kv[1])[:10]:
                print(f"  {specialty}: {count:,}")
        print("=" * 50)


class DeactivatedProviderCleanup:
    """Removes providers carrying a deactivation date, cascading to dependents."""

    def __init__(self, store: ProviderStore):
        self.store = store

    def _count(self, table: str) -> int:
        return self.store.fetchone(
            f"SELECT COUNT(*) AS n FROM {table} WHERE npi IN ({DEACTIVATED})"
        )["n"]

    def _breakdown(self, report: CleanupReport):
        for row in self.store.fetchall(
            f'''
            SELECT COALESCE(l.state, 'UNKNOWN') AS state, COUNT(DISTINCT p.npi) AS n
            FROM providers p LEFT JOIN practice_locations l ON l.npi = p.npi
            WHERE p.npi IN ({DEACTIVATED})
            GROUP BY COALESCE(l.state, 'UNKNOWN')
            '''
        ):
            report.by_state[row["state"]] = row["n"]

        for row in self.store.fetchall(
            f'''
            SELECT COALESCE(primary_specialty, primary_taxonomy_code, 'UNKNOWN') AS specialty,
                   COUNT(*) AS n
            FROM providers WHERE npi IN ({DEACTIVATED})
            GROUP BY COALESCE(primary_specialty, primary_taxonomy_code, 'UNKNOWN')
            '''
        ):
            report.by_specialty[row["specialty"]] = row["n"]

    def run(self, dry_run: bool = True) -> CleanupReport:
        """
        Delete deactivated providers and everything hanging off them.

        Args:
            dry_run: Count and break down only

        Returns:
            CleanupReport with the rows removed (or that would be removed)
        """
        report = CleanupReport(dry_run=dry_run)
        report.providers = self._count("providers")
        report.locations = self._count("practice_locations")
        report.acceptances = self._count("provider_plan_acceptance")
        report.verifications = self._count("verification_logs")
        report.provider_insurance = self._count("provider_insurance")
        self._breakdown(report)

        if dry_run or report.providers == 0:
            logger.info(f"Cleanup {'dry run' if dry_run else 'skipped'}: "
                        f"{report.providers} deactivated providers")
            return report

        with self.store.transaction():
            self.store.execute(
                f'''
                DELETE FROM field_provenance
                WHERE (table_name = 'providers' AND entity_key IN ({DEACTIVATED}))
                   OR (table_name = 'practice_locations' AND entity_key IN (
                        SELECT CAST(id AS TEXT) FROM practice_locations WHERE npi IN ({DEACTIVATED})))
                   OR (table_name = 'provider_plan_acceptance' AND entity_key IN (
                        SELECT CAST(id AS TEXT) FROM provider_plan_acceptance WHERE npi IN ({DEACTIVATED})))
                '''
            )
            self.store.execute(f"DELETE FROM verification_logs WHERE npi IN ({DEACTIVATED})")
            self.store.execute(f"DELETE FROM provider_plan_acceptance WHERE npi IN ({DEACTIVATED})")
            self.store.execute(f"DELETE FROM provider_insurance WHERE npi IN ({DEACTIVATED})")
            self.store.execute(f"DELETE FROM practice_locations WHERE npi IN ({DEACTIVATED})")
            self.store.execute(f"DELETE FROM providers WHERE npi IN ({DEACTIVATED})")

        logger.info(f"Removed {report.providers} deactivated providers, {report.acceptances} "
                    f"acceptances, {report.verifications} verification events")
        return report
