"""
Provenance merge engine for ProviderTrust.

Every write to a provider, practice location or plan-acceptance field goes
through ``ProvenanceMergeEngine``. Each field remembers the tier of its last
writer; an incoming value only replaces a stored one when it comes from a
strictly more trusted tier. Refused values are kept as import conflicts for
operator review.
"""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import MergeError
from ..normalize.address_canonicalizer import AddressCanonicalizer
from ..storage.database import ProviderStore, expiry_after, format_timestamp, utc_now
from .tiers import DEFAULT_TIER, SourceTier

logger = logging.getLogger(__name__)

PROVIDERS = "providers"
LOCATIONS = "practice_locations"
ACCEPTANCES = "provider_plan_acceptance"

KEY_COLUMNS = {
    PROVIDERS: "npi",
    LOCATIONS: "id",
    ACCEPTANCES: "id",
}

MUTABLE_FIELDS = {
    PROVIDERS: {
        "entity_type", "first_name", "last_name", "middle_name", "organization_name",
        "credential", "primary_taxonomy_code", "primary_specialty", "deactivation_date",
    },
    LOCATIONS: {
        "address_purpose", "address_line1", "address_line2", "city", "state",
        "zip_code", "phone", "fax",
    },
    ACCEPTANCES: {"acceptance_status", "confidence_score"},
}

# Set on insert (or when still null), never replaced afterwards
WRITE_ONCE_FIELDS = {
    LOCATIONS: {"address_line1", "address_line2", "city", "state", "zip_code", "phone", "fax"},
}

ADDRESS_FIELDS = ("address_line1", "city", "state", "zip_code")
PHONE_FIELDS = ("phone", "fax")


class MergeOutcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    CONFLICT = "conflict"
    WRITE_ONCE_REJECTED = "write_once_rejected"


@dataclass(frozen=True)
class EntityRef:
    """Identifies one mutable row: its table, key and owning provider."""

    table: str
    key: str
    npi: Optional[str] = None

    @classmethod
    def provider(cls, npi: str) -> "EntityRef":
        return cls(PROVIDERS, str(npi), str(npi))

    @classmethod
    def location(cls, location_id: int, npi: Optional[str] = None) -> "EntityRef":
        return cls(LOCATIONS, str(location_id), npi)

    @classmethod
    def acceptance(cls, acceptance_id: int, npi: Optional[str] = None) -> "EntityRef":
        return cls(ACCEPTANCES, str(acceptance_id), npi)


@dataclass
class FieldDecision:
    field: str
    outcome: MergeOutcome
    stored_value: Any
    incoming_value: Any
    current_tier: SourceTier
    incoming_tier: SourceTier


@dataclass
class RecordResult:
    """Per-field decisions for one source record."""

    entity: EntityRef
    created: bool = False
    decisions: List[FieldDecision] = field(default_factory=list)

    def _count(self, *outcomes: MergeOutcome) -> int:
        return sum(1 for d in self.decisions if d.outcome in outcomes)

    @property
    def applied(self) -> int:
        return self._count(MergeOutcome.APPLIED)

    @property
    def unchanged(self) -> int:
        return self._count(MergeOutcome.UNCHANGED)

    @property
    def conflicts(self) -> int:
        return self._count(MergeOutcome.CONFLICT, MergeOutcome.WRITE_ONCE_REJECTED)

    @property
    def changed(self) -> bool:
        return self.created or self.applied > 0


def is_unset(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_confidence(value: Any) -> int:
    """
    Parse an incoming confidence score.

    Raises:
        MergeError: If the value is not a number in [0, 100]
    """
    try:
        score = int(float(value))
    except (TypeError, ValueError, OverflowError) as e:
        raise MergeError(f"Confidence {value!r} is not a number") from e
    if not 0 <= score <= 100:
        raise MergeError(f"Confidence {value!r} is outside [0, 100]")
    return score


def decide(current_value: Any, current_tier: SourceTier, incoming_value: Any,
           incoming_tier: SourceTier, write_once: bool = False,
           equal: bool = False, same_tier_revises: bool = False) -> MergeOutcome:
    """
    Apply the source-priority rule to one field.

    Args:
        current_value: Stored value
        current_tier: Tier of the stored value's writer
        incoming_value: Candidate value
        incoming_tier: Tier of the candidate's source
        write_once: Whether the field may only be filled while null
        equal: Whether the two values compare equal after normalization
        same_tier_revises: Whether a source may replace its own tier's value

    Returns:
        The merge outcome
    """
    if is_unset(incoming_value):
        # Sources cannot clear a field
        return MergeOutcome.UNCHANGED
    if is_unset(current_value):
        return MergeOutcome.APPLIED
    if equal:
        return MergeOutcome.UNCHANGED
    if write_once:
        return MergeOutcome.WRITE_ONCE_REJECTED
    if incoming_tier > current_tier or (same_tier_revises and incoming_tier == current_tier):
        return MergeOutcome.APPLIED
    return MergeOutcome.CONFLICT


class ProvenanceMergeEngine:
    """
    Central authority for field writes.

    Holds no state beyond configuration; every decision reads the stored value
    and its provenance inside the caller's transaction.
    """

    def __init__(self, store: ProviderStore, config: Optional[Dict] = None):
        """
        Initialize merge engine.

        Args:
            store: Relational store
            config: Full configuration dictionary
        """
        config = config or {}
        self.store = store
        self.canonicalizer = AddressCanonicalizer(config.get("address", {}))
        self.ttl_months = config.get("confidence", {}).get("verification_ttl_months", 6)

        logger.info("Initialized ProvenanceMergeEngine")

    def _comparable(self, table: str, field_name: str, value: Any) -> Any:
        """Normalize a value for equality checks only; stored values keep their form."""
        if is_unset(value):
            return None
        if table == LOCATIONS:
            if field_name in PHONE_FIELDS:
                return self.canonicalizer.normalize_phone(value)
            if field_name in ("address_line1", "address_line2"):
                return self.canonicalizer.canonical_line(value)
            if field_name == "city":
                return self.canonicalizer.canonical_city(value)
            if field_name == "state":
                return self.canonicalizer.canonical_state(value)
            if field_name == "zip_code":
                return self.canonicalizer.canonical_zip(value)
        if table == ACCEPTANCES and field_name == "confidence_score":
            return parse_confidence(value)
        return " ".join(str(value).split())

    def _stored_form(self, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    def _check_field(self, table: str, field_name: str):
        if table not in MUTABLE_FIELDS:
            raise MergeError(f"Unknown entity table: {table}")
        if field_name not in MUTABLE_FIELDS[table]:
            raise MergeError(f"Field {table}.{field_name} is not mergeable")

    def _load(self, entity: EntityRef) -> Optional[sqlite3.Row]:
        key_column = KEY_COLUMNS[entity.table]
        return self.store.fetchone(
            f"SELECT * FROM {entity.table} WHERE {key_column} = ?", (entity.key,)
        )

    def current_tier(self, entity: EntityRef, field_name: str) -> SourceTier:
        """Tier of the last writer of a field, ``registry`` when never written."""
        source = self.store.get_field_source(entity.table, entity.key, field_name)
        return SourceTier.parse(source) if source else DEFAULT_TIER

    def apply(self, entity: EntityRef, field_name: str, value: Any,
              tier: SourceTier, now: Optional[datetime] = None,
              same_tier_revises: bool = False) -> FieldDecision:
        """
        Apply one incoming field value.

        Args:
            entity: Row being written
            field_name: Column name
            value: Incoming value
            tier: Source tier of the incoming value
            now: Timestamp for provenance and audit rows
            same_tier_revises: Let the incoming tier replace a value written by the
                same tier, for sources that recompute their own earlier output

        Returns:
            The decision taken for this field

        Raises:
            MergeError: If the field is not mergeable or the row does not exist
        """
        tier = SourceTier.parse(tier)
        self._check_field(entity.table, field_name)
        now = now or utc_now()
        if entity.table == ACCEPTANCES and field_name == "confidence_score" and not is_unset(value):
            value = parse_confidence(value)

        with self.store.transaction():
            row = self._load(entity)
            if row is None:
                raise MergeError(f"{entity.table} row {entity.key} does not exist")

            current = row[field_name]
            current_tier = self.current_tier(entity, field_name)
            equal = (self._comparable(entity.table, field_name, current)
                     == self._comparable(entity.table, field_name, value))
            write_once = field_name in WRITE_ONCE_FIELDS.get(entity.table, set())
            outcome = decide(current, current_tier, value, tier, write_once, equal, same_tier_revises)

            npi = entity.npi or (row["npi"] if "npi" in row.keys() else None)
            if outcome == MergeOutcome.APPLIED:
                self._write(entity, row, field_name, self._stored_form(value), tier, now)
            elif outcome in (MergeOutcome.CONFLICT, MergeOutcome.WRITE_ONCE_REJECTED):
                self.store.insert_import_conflict(
                    npi, entity.table, entity.key, field_name, current, value,
                    current_tier.label, tier.label, now,
                )
                logger.debug(
                    f"Conflict on {entity.table}.{field_name} for {entity.key}: kept "
                    f"{current!r} ({current_tier.label}), rejected {value!r} ({tier.label})"
                )

        return FieldDecision(field_name, outcome, current, value, current_tier, tier)

    def _write(self, entity: EntityRef, row: sqlite3.Row, field_name: str, value: Any,
               tier: SourceTier, now: datetime):
        key_column = KEY_COLUMNS[entity.table]
        stamp = format_timestamp(now)
        assignments = {field_name: value, "updated_at": stamp}

        if entity.table == LOCATIONS:
            if field_name in ADDRESS_FIELDS:
                merged = {f: row[f] for f in ADDRESS_FIELDS}
                merged[field_name] = value
                assignments["address_hash"] = self.canonicalizer.address_hash(
                    merged["address_line1"], merged["city"], merged["state"], merged["zip_code"]
                )
            if tier != SourceTier.REGISTRY:
                assignments["enriched_at"] = stamp

        columns = ", ".join(f"{column} = ?" for column in assignments)
        self.store.execute(
            f"UPDATE {entity.table} SET {columns} WHERE {key_column} = ?",
            tuple(assignments.values()) + (entity.key,),
        )
        self.store.set_field_source(entity.table, entity.key, field_name, tier.label, now)

    def apply_record(self, entity: EntityRef, values: Dict[str, Any], tier: SourceTier,
                     now: Optional[datetime] = None) -> RecordResult:
        """
        Apply all fields of one source record atomically.

        A provider row is created on first sighting. Any failure rolls back
        every field of the record and surfaces as ``MergeError``.

        Args:
            entity: Target row
            values: Field name to incoming value
            tier: Source tier shared by all values
            now: Timestamp for provenance and audit rows

        Returns:
            RecordResult with one decision per field
        """
        tier = SourceTier.parse(tier)
        now = now or utc_now()
        result = RecordResult(entity)

        try:
            with self.store.transaction():
                if entity.table == PROVIDERS and self.store.get_provider(entity.key) is None:
                    self.store.insert_provider(entity.key, now=now)
                    result.created = True
                for field_name, value in values.items():
                    result.decisions.append(self.apply(entity, field_name, value, tier, now))
        except sqlite3.IntegrityError as e:
            raise MergeError(f"Failed to apply record for {entity.table} {entity.key}: {e}") from e

        return result

    def ensure_provider(self, npi: str, now: Optional[datetime] = None) -> bool:
        """Create a bare provider row if it does not exist yet."""
        if self.store.get_provider(npi) is not None:
            return False
        self.store.insert_provider(npi, now=now)
        return True

    def upsert_location(self, npi: str, components: Dict[str, Any], tier: SourceTier,
                        now: Optional[datetime] = None) -> RecordResult:
        """
        Insert or merge a practice location keyed by (provider, address hash).

        Args:
            npi: Owning provider
            components: Location fields (address_line1, city, state, zip_code, phone, ...)
            tier: Source tier of the incoming location
            now: Timestamp for provenance and audit rows

        Returns:
            RecordResult for the location row
        """
        tier = SourceTier.parse(tier)
        now = now or utc_now()
        unknown = set(components) - MUTABLE_FIELDS[LOCATIONS]
        if unknown:
            raise MergeError(f"Fields not mergeable on practice_locations: {sorted(unknown)}")

        address_hash = self.canonicalizer.address_hash(
            components.get("address_line1"), components.get("city"),
            components.get("state"), components.get("zip_code"),
        )
        if address_hash is None:
            raise MergeError(f"Location for {npi} has no street line or city")

        try:
            with self.store.transaction():
                provider_created = self.ensure_provider(npi, now)
                existing = self.store.find_location(npi, address_hash)

                if existing is None:
                    result = self._insert_location(npi, components, address_hash, tier, now)
                    result.created = True
                    return result

                result = RecordResult(EntityRef.location(existing["id"], npi), created=provider_created)
                for field_name, value in components.items():
                    result.decisions.append(self.apply(result.entity, field_name, value, tier, now))
                return result
        except sqlite3.IntegrityError as e:
            raise MergeError(f"Failed to upsert location for {npi}: {e}") from e

    def _insert_location(self, npi: str, components: Dict[str, Any], address_hash: str,
                         tier: SourceTier, now: datetime) -> RecordResult:
        stamp = format_timestamp(now)
        values = {k: self._stored_form(v) for k, v in components.items() if not is_unset(v)}
        row = dict(values)
        row.update({
            "npi": npi,
            "address_hash": address_hash,
            "data_source": tier.label,
            "enriched_at": stamp if tier != SourceTier.REGISTRY else None,
            "created_at": stamp,
            "updated_at": stamp,
        })
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        cursor = self.store.execute(
            f"INSERT INTO {LOCATIONS} ({columns}) VALUES ({placeholders})", tuple(row.values())
        )

        entity = EntityRef.location(cursor.lastrowid, npi)
        result = RecordResult(entity)
        for field_name, value in values.items():
            self.store.set_field_source(LOCATIONS, entity.key, field_name, tier.label, now)
            result.decisions.append(
                FieldDecision(field_name, MergeOutcome.APPLIED, None, value, DEFAULT_TIER, tier)
            )
        logger.debug(f"Inserted location {entity.key} for {npi} from {tier.label}")
        return result

    def apply_acceptance(self, npi: str, plan_id: str, location_id: Optional[int],
                         status: Optional[str], confidence: Optional[int], tier: SourceTier,
                         now: Optional[datetime] = None) -> RecordResult:
        """
        Import a plan-acceptance fact.

        A new PPA is created with the incoming status and confidence. For an
        existing PPA both fields go through ``apply``, so an import can never
        overwrite a confidence set by an equal or more trusted source.

        Args:
            npi: Provider
            plan_id: Insurance plan
            location_id: Practice location, or None for a provider-wide record
            status: Acceptance status, e.g. ``ACCEPTED``
            confidence: Confidence score in [0, 100]
            tier: Source tier of the import
            now: Timestamp for the record

        Returns:
            RecordResult for the PPA row
        """
        tier = SourceTier.parse(tier)
        now = now or utc_now()
        if not is_unset(confidence):
            confidence = parse_confidence(confidence)

        values = {"acceptance_status": status, "confidence_score": confidence}
        values = {k: v for k, v in values.items() if not is_unset(v)}

        try:
            with self.store.transaction():
                self.ensure_provider(npi, now)
                existing = self.store.find_acceptance(npi, plan_id, location_id)
                if existing is None:
                    acceptance_id = self.store.insert_acceptance(
                        npi, plan_id, location_id, status or "PENDING", confidence or 0,
                        expiry_after(now, self.ttl_months), now, origin_source=tier.label,
                    )
                    entity = EntityRef.acceptance(acceptance_id, npi)
                    result = RecordResult(entity, created=True)
                    for field_name, value in values.items():
                        self.store.set_field_source(ACCEPTANCES, entity.key, field_name, tier.label, now)
                        result.decisions.append(
                            FieldDecision(field_name, MergeOutcome.APPLIED, None, value,
                                          DEFAULT_TIER, tier)
                        )
                    return result

                entity = EntityRef.acceptance(existing["id"], npi)
                result = RecordResult(entity)
                for field_name, value in values.items():
                    result.decisions.append(self.apply(entity, field_name, value, tier, now))
                return result
        except sqlite3.IntegrityError as e:
            raise MergeError(f"Failed to apply acceptance {npi}/{plan_id}: {e}") from e
