"""
Field-update ingestion for ProviderTrust.

Turns a stream of (entity, field, value, tier) tuples into per-record merge
calls. A CSV loader is provided for operators; upstream importers may hand
``FieldUpdate`` objects in directly. Location rows may carry a one-line
``address`` instead of separate street, city, state and ZIP columns.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from ..errors import MergeError
from ..merge.provenance import (ACCEPTANCES, LOCATIONS, MUTABLE_FIELDS, PROVIDERS, EntityRef,
                                ProvenanceMergeEngine, is_unset)
from ..merge.tiers import SourceTier
from ..normalize.address_canonicalizer import AddressCanonicalizer

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["entity_table", "entity_key", "field", "value", "source_tier"]

# One-line address accepted on practice_locations, split into its components on apply
FREEFORM_ADDRESS_FIELD = "address"


@dataclass(frozen=True)
class FieldUpdate:
    entity_table: str
    entity_key: str
    field: str
    value: Any
    tier: SourceTier


@dataclass
class IngestionReport:
    dry_run: bool = True
    records: int = 0
    fields: int = 0
    records_changed: int = 0
    applied: int = 0
    unchanged: int = 0
    conflicts: int = 0
    errors: int = 0

    def to_dict(self) -> Dict:
        return {
            "dry_run": self.dry_run,
            "records": self.records,
            "fields": self.fields,
            "records_changed": self.records_changed,
            "applied": self.applied,
            "unchanged": self.unchanged,
            "conflicts": self.conflicts,
            "errors": self.errors,
        }

    def print_summary(self):
        print("\n" + "=" * 50)
        print(f"FIELD UPDATE IMPORT SUMMARY{' (DRY RUN)' if self.dry_run else ''}")
        print("=" * 50)
        print(f"Source records: {self.records:,}")
        print(f"Field values: {self.fields:,}")
        if not self.dry_run:
            print(f"Records changed: {self.records_changed:,}")
            print(f"Fields applied: {self.applied:,}")
            print(f"Fields unchanged: {self.unchanged:,}")
            print(f"Conflicts logged: {self.conflicts:,}")
        print(f"Errors: {self.errors:,}")
        print("=" * 50)


def validate_field_updates(df: pd.DataFrame) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """
    Validate a field-update frame.

    Rows with an unknown table, a non-mergeable field, a blank key or an
    unknown tier are dropped and counted. A one-line ``address`` counts as a
    location field.

    Args:
        df: Raw frame with the required columns

    Returns:
        Tuple of (valid rows, validation summary)
    """
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")

    df = df.copy()
    df["entity_table"] = df["entity_table"].astype(str).str.strip()
    df["entity_key"] = df["entity_key"].astype(str).str.strip()
    df["field"] = df["field"].astype(str).str.strip()

    def _tier_ok(value) -> bool:
        try:
            SourceTier.parse(value)
            return True
        except ValueError:
            return False

    known_table = df["entity_table"].isin([PROVIDERS, LOCATIONS, ACCEPTANCES])
    known_field = df.apply(
        lambda row: (row["field"] in MUTABLE_FIELDS.get(row["entity_table"], set())
                     or (row["entity_table"] == LOCATIONS and row["field"] == FREEFORM_ADDRESS_FIELD)),
        axis=1,
    ) if len(df) else pd.Series(dtype=bool)
    has_key = df["entity_key"].ne("") & df["entity_key"].ne("nan")
    tier_ok = df["source_tier"].apply(_tier_ok)

    valid_mask = known_table & known_field & has_key & tier_ok
    summary = {
        "total_rows": len(df),
        "valid_rows": int(valid_mask.sum()),
        "unknown_table": int((~known_table).sum()),
        "unknown_field": int((known_table & ~known_field).sum()),
        "missing_key": int((~has_key).sum()),
        "unknown_tier": int((~tier_ok).sum()),
    }
    if summary["valid_rows"] < summary["total_rows"]:
        logger.warning(f"Dropped {summary['total_rows'] - summary['valid_rows']} invalid field updates: {summary}")
    return df[valid_mask], summary


def load_field_updates(path: str) -> List[FieldUpdate]:
    """
    Read field updates from a CSV file.

    Args:
        path: CSV with entity_table, entity_key, field, value and source_tier columns

    Returns:
        Validated FieldUpdate list in file order
    """
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    valid, summary = validate_field_updates(df)
    logger.info(f"Loaded {summary['valid_rows']} of {summary['total_rows']} field updates from {path}")

    return [
        FieldUpdate(row.entity_table, row.entity_key, row.field,
                    None if is_unset(row.value) else row.value,
                    SourceTier.parse(row.source_tier))
        for row in valid.itertuples(index=False)
    ]


def group_by_record(updates: Iterable[FieldUpdate]) -> "OrderedDict[Tuple[str, str, SourceTier], Dict[str, Any]]":
    """Group updates into source records: one per (table, key, tier)."""
    records: "OrderedDict[Tuple[str, str, SourceTier], Dict[str, Any]]" = OrderedDict()
    for update in updates:
        key = (update.entity_table, update.entity_key, update.tier)
        records.setdefault(key, {})[update.field] = update.value
    return records


def expand_freeform_address(canonicalizer: AddressCanonicalizer, values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace a one-line ``address`` with the components usaddress finds in it.

    Components given explicitly in the same record win over parsed ones.
    """
    if FREEFORM_ADDRESS_FIELD not in values:
        return values
    values = dict(values)
    address = values.pop(FREEFORM_ADDRESS_FIELD)
    if is_unset(address):
        return values

    for field_name, component in canonicalizer.parse_freeform(str(address)).items():
        if component:
            values.setdefault(field_name, component)
    return values


def apply_field_updates(engine: ProvenanceMergeEngine, updates: Iterable[FieldUpdate],
                        dry_run: bool = True, limit: Optional[int] = None) -> IngestionReport:
    """
    Apply field updates record by record.

    Each record commits atomically; a failing record is rolled back, counted
    as an error and the stream continues.

    Args:
        engine: Merge engine
        updates: Field updates
        dry_run: Count records without applying
        limit: Maximum number of records

    Returns:
        IngestionReport
    """
    report = IngestionReport(dry_run=dry_run)
    for (table, key, tier), values in group_by_record(updates).items():
        if limit is not None and report.records >= limit:
            break
        report.records += 1
        report.fields += len(values)
        if dry_run:
            continue

        if table == LOCATIONS:
            values = expand_freeform_address(engine.canonicalizer, values)
        entity = EntityRef.provider(key) if table == PROVIDERS else EntityRef(table, key)
        try:
            result = engine.apply_record(entity, values, tier)
        except MergeError as e:
            report.errors += 1
            logger.error(f"Rejected record {table}/{key}: {e}")
            continue

        report.applied += result.applied
        report.unchanged += result.unchanged
        report.conflicts += result.conflicts
        report.records_changed += 1 if result.changed else 0

    logger.info(f"Applied {report.records} records: {report.applied} fields applied, "
                f"{report.conflicts} conflicts, {report.errors} errors")
    return report
