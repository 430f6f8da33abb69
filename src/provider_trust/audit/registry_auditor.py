"""
Registry reconciliation auditor for ProviderTrust.

Diffs local provider records against the NPPES registry, classifies every
difference by severity, stores one discrepancy record per difference and
writes corrections back through the provenance merge engine with tier
``registry``. The per-provider watermark makes repeated runs progress
monotonically.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from ..errors import FatalExternalError, MergeError, TransientExternalError
from ..merge.provenance import EntityRef, ProvenanceMergeEngine, is_unset
from ..merge.tiers import SourceTier
from ..storage.cursor import KeysetCursor
from ..storage.database import ProviderStore, format_timestamp, utc_now
from .registry_client import NppesRegistryClient, RegistryRecord

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    INFO = "INFO"


class DiscrepancyType(str, Enum):
    NPI_NOT_FOUND = "NPI_NOT_FOUND"
    DEACTIVATED_NPI = "DEACTIVATED_NPI"
    NAME_MISMATCH = "NAME_MISMATCH"
    CREDENTIAL_MISMATCH = "CREDENTIAL_MISMATCH"
    SPECIALTY_MISMATCH = "SPECIALTY_MISMATCH"
    ADDRESS_MISMATCH = "ADDRESS_MISMATCH"


class RunState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class Discrepancy:
    npi: str
    audit_type: DiscrepancyType
    severity: Severity
    field_name: Optional[str]
    current_value: Optional[str]
    expected_value: Optional[str]
    details: str


@dataclass
class AuditReport:
    state: RunState = RunState.NOT_STARTED
    dry_run: bool = True
    run_id: Optional[int] = None
    processed: int = 0
    with_discrepancies: int = 0
    by_severity: Dict[str, int] = field(default_factory=lambda: {s.value: 0 for s in Severity})
    by_type: Dict[str, int] = field(default_factory=dict)
    corrections_applied: int = 0
    conflicts_logged: int = 0
    locations_added: int = 0
    errors: int = 0
    fatal_error: Optional[str] = None
    last_npi: Optional[str] = None
    duration_seconds: float = 0.0

    def record(self, discrepancies: List[Discrepancy]):
        if discrepancies:
            self.with_discrepancies += 1
        for d in discrepancies:
            self.by_severity[d.severity.value] += 1
            self.by_type[d.audit_type.value] = self.by_type.get(d.audit_type.value, 0) + 1

    def to_dict(self) -> Dict:
        return {
            "state": self.state.value,
            "dry_run": self.dry_run,
            "processed": self.processed,
            "with_discrepancies": self.with_discrepancies,
            "by_severity": dict(self.by_severity),
            "by_type": dict(self.by_type),
            "corrections_applied": self.corrections_applied,
            "conflicts_logged": self.conflicts_logged,
            "locations_added": self.locations_added,
            "errors": self.errors,
            "fatal_error": self.fatal_error,
            "last_npi": self.last_npi,
        }

    def print_summary(self):
        print("\n" + "=" * 50)
        print(f"REGISTRY AUDIT SUMMARY{' (DRY RUN)' if self.dry_run else ''}")
        print("=" * 50)
        print(f"State: {self.state.value}")
        print(f"Providers processed: {self.processed:,}")
        print(f"Providers with discrepancies: {self.with_discrepancies:,}")
        for severity, count in self.by_severity.items():
            print(f"  {severity}: {count:,}")
        for audit_type, count in sorted(self.by_type.items()):
            print(f"  {audit_type}: {count:,}")
        print(f"Corrections applied: {self.corrections_applied:,}")
        print(f"Conflicts logged: {self.conflicts_logged:,}")
        print(f"Locations added: {self.locations_added:,}")
        print(f"Errors: {self.errors:,}")
        if self.fatal_error:
            print(f"Fatal error: {self.fatal_error}")
        print(f"Duration: {self.duration_seconds:.2f} seconds")
        print("=" * 50)


def _same_text(a: Optional[str], b: Optional[str]) -> bool:
    """Case- and whitespace-insensitive comparison."""
    return " ".join((a or "").lower().split()) == " ".join((b or "").lower().split())


def compare_with_registry(provider: sqlite3.Row, local_states: List[str],
                          record: Optional[RegistryRecord]) -> List[Discrepancy]:
    """
    Classify differences between a local provider and its registry record.

    Names, credential and taxonomy are only compared when both sides carry a
    value; a blank local field is filled by the correction pass instead.

    Args:
        provider: Local providers row
        local_states: Distinct states of the provider's practice locations
        record: Registry record, or None when the NPI is unknown

    Returns:
        List of discrepancies, most severe first
    """
    npi = provider["npi"]
    if record is None:
        return [Discrepancy(npi, DiscrepancyType.NPI_NOT_FOUND, Severity.CRITICAL, None,
                            npi, None, "NPI not found in the registry")]

    found: List[Discrepancy] = []

    if record.is_deactivated and is_unset(provider["deactivation_date"]):
        found.append(Discrepancy(
            npi, DiscrepancyType.DEACTIVATED_NPI, Severity.CRITICAL, "deactivation_date",
            None, record.deactivation_date or "deactivated",
            "Registry shows NPI deactivated but local record has no deactivation date",
        ))

    if record.entity_type == "individual":
        for field_name in ("first_name", "last_name"):
            local_value = provider[field_name]
            registry_value = getattr(record, field_name)
            if local_value and registry_value and not _same_text(local_value, registry_value):
                found.append(Discrepancy(
                    npi, DiscrepancyType.NAME_MISMATCH, Severity.WARNING, field_name,
                    local_value, registry_value, f"{field_name} differs from registry",
                ))

    if (provider["credential"] and record.credential
            and not _same_text(provider["credential"], record.credential)):
        found.append(Discrepancy(
            npi, DiscrepancyType.CREDENTIAL_MISMATCH, Severity.WARNING, "credential",
            provider["credential"], record.credential, "Credential differs from registry",
        ))

    if (provider["primary_taxonomy_code"] and record.primary_taxonomy_code
            and not _same_text(provider["primary_taxonomy_code"], record.primary_taxonomy_code)):
        found.append(Discrepancy(
            npi, DiscrepancyType.SPECIALTY_MISMATCH, Severity.WARNING, "primary_taxonomy_code",
            provider["primary_taxonomy_code"], record.primary_taxonomy_code,
            f"Primary taxonomy differs from registry ({record.primary_taxonomy_desc or 'no description'})",
        ))

    practice = record.practice_address
    if practice and practice.state and local_states:
        if practice.state.strip().upper() not in local_states:
            found.append(Discrepancy(
                npi, DiscrepancyType.ADDRESS_MISMATCH, Severity.INFO, "state",
                ", ".join(sorted(local_states)), practice.state.strip().upper(),
                "Registry practice state not among local practice locations",
            ))

    return found


class RegistryAuditor:
    """
    Batch reconciliation of providers against the NPPES registry.

    The registry fetch for a provider always completes before the short
    transaction that stores its discrepancies, corrections and watermark.
    """

    def __init__(self, store: ProviderStore, client: NppesRegistryClient,
                 merge_engine: ProvenanceMergeEngine, config: Optional[Dict] = None):
        """
        Initialize auditor.

        Args:
            store: Relational store
            client: Registry client (carries its own rate limiter)
            merge_engine: Merge engine used for corrective writes
            config: Full configuration dictionary
        """
        registry_config = (config or {}).get("registry", {})
        self.store = store
        self.client = client
        self.merge_engine = merge_engine
        self.batch_size = registry_config.get("batch_size", 50)
        self.stale_after_days = registry_config.get("stale_after_days", 90)
        self.add_registry_locations = registry_config.get("add_registry_locations", True)
        self.state = RunState.NOT_STARTED

    def provider_cursor(self, resume: bool, stale_after_days: Optional[int],
                        limit: Optional[int], now: datetime,
                        start_after: Optional[str] = None) -> KeysetCursor:
        """
        Build the provider scan.

        Args:
            resume: Only providers never reconciled
            stale_after_days: Only providers reconciled longer ago than this;
                None scans every provider
            limit: Maximum number of providers
            now: Reference time for the staleness cutoff
            start_after: Resume strictly after this NPI
        """
        if resume:
            where, params = "registry_last_synced IS NULL", ()
        elif stale_after_days is not None:
            cutoff = format_timestamp(now - timedelta(days=stale_after_days))
            where, params = "registry_last_synced IS NULL OR registry_last_synced < ?", (cutoff,)
        else:
            where, params = "", ()

        return KeysetCursor(self.store, "providers", "npi", where=where, params=params,
                            batch_size=self.batch_size, start_after=start_after, limit=limit)

    def _corrections(self, provider: sqlite3.Row, record: RegistryRecord,
                     discrepancies: List[Discrepancy], now: datetime) -> Dict[str, str]:
        """Registry values to push through the merge engine."""
        values: Dict[str, str] = {}
        for d in discrepancies:
            if d.audit_type == DiscrepancyType.DEACTIVATED_NPI:
                values["deactivation_date"] = record.deactivation_date or now.date().isoformat()
            elif d.severity == Severity.WARNING and d.field_name:
                values[d.field_name] = d.expected_value

        # Blank local fields are filled from the registry
        fills = {
            "entity_type": record.entity_type,
            "first_name": record.first_name,
            "last_name": record.last_name,
            "middle_name": record.middle_name,
            "organization_name": record.organization_name,
            "credential": record.credential,
            "primary_taxonomy_code": record.primary_taxonomy_code,
            "primary_specialty": record.primary_taxonomy_desc,
        }
        for field_name, value in fills.items():
            if is_unset(provider[field_name]) and not is_unset(value):
                values.setdefault(field_name, value)
        return values

    def _apply(self, run_id: Optional[int], provider: sqlite3.Row,
               record: Optional[RegistryRecord], discrepancies: List[Discrepancy],
               report: AuditReport, now: datetime):
        npi = provider["npi"]
        with self.store.transaction():
            for d in discrepancies:
                self.store.insert_discrepancy(run_id, npi, d.audit_type.value, d.severity.value,
                                              d.field_name, d.current_value, d.expected_value,
                                              d.details, now)

            applied = conflicts = added = 0
            if record is not None:
                corrections = self._corrections(provider, record, discrepancies, now)
                if corrections:
                    result = self.merge_engine.apply_record(
                        EntityRef.provider(npi), corrections, SourceTier.REGISTRY, now)
                    applied += result.applied
                    conflicts += result.conflicts

                practice = record.practice_address
                if self.add_registry_locations and practice:
                    location = practice.as_location()
                    if location.get("address_line1") and location.get("city"):
                        result = self.merge_engine.upsert_location(
                            npi, location, SourceTier.REGISTRY, now)
                        added += 1 if result.created else 0
                        conflicts += result.conflicts

            self.store.update_watermark(npi, now)

        report.corrections_applied += applied
        report.conflicts_logged += conflicts
        report.locations_added += added

    def run(self, dry_run: bool = True, limit: Optional[int] = None, resume: bool = False,
            stale_after_days: Optional[int] = None, full_scan: bool = False,
            now: Optional[datetime] = None) -> AuditReport:
        """
        Reconcile providers against the registry.

        Args:
            dry_run: Classify only; write nothing
            limit: Maximum number of providers to process
            resume: Restrict to providers with no watermark
            stale_after_days: Staleness threshold in days; defaults to configuration
            full_scan: Ignore staleness and scan every provider
            now: Reference time, also used as the watermark value

        Returns:
            AuditReport with counts per category
        """
        now = now or utc_now()
        if full_scan:
            stale_after_days = None
        elif stale_after_days is None:
            stale_after_days = self.stale_after_days

        report = AuditReport(dry_run=dry_run)
        started = utc_now()
        if not dry_run:
            report.run_id = self.store.start_run("registry_audit")

        self.state = report.state = RunState.IN_PROGRESS
        cursor = self.provider_cursor(resume, stale_after_days, limit, now)
        logger.info(f"Starting registry audit (dry_run={dry_run}, resume={resume}, "
                    f"stale_after_days={stale_after_days}, limit={limit})")

        try:
            for provider in cursor:
                npi = provider["npi"]
                local_states = self.store.location_states(npi)

                try:
                    record = self.client.fetch(npi)
                except TransientExternalError as e:
                    report.errors += 1
                    logger.warning(f"Skipping {npi}: {e}")
                    continue

                discrepancies = compare_with_registry(provider, local_states, record)

                if not dry_run:
                    try:
                        self._apply(report.run_id, provider, record, discrepancies, report, now)
                    except (MergeError, sqlite3.IntegrityError) as e:
                        report.errors += 1
                        logger.error(f"Rolled back {npi}: {e}")
                        continue

                report.record(discrepancies)
                report.processed += 1
                report.last_npi = npi

                if report.processed % 100 == 0:
                    logger.info(f"Audited {report.processed} providers (last NPI {npi})")

            self.state = report.state = RunState.COMPLETED
        except FatalExternalError as e:
            self.state = report.state = RunState.FAILED
            report.fatal_error = str(e)
            logger.error(f"Registry audit aborted: {e}")
        except sqlite3.Error as e:
            self.state = report.state = RunState.FAILED
            report.fatal_error = f"Store failure: {e}"
            logger.error(f"Registry audit aborted on store failure: {e}")
            raise
        finally:
            report.duration_seconds = (utc_now() - started).total_seconds()
            if report.run_id is not None:
                self.store.finish_run(report.run_id, report.state.value, report.processed,
                                      report.to_dict(), report.fatal_error)

        logger.info(f"Registry audit {report.state.value}: {report.processed} processed, "
                    f"{report.errors} errors")
        return report
