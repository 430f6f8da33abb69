"""
Geocoding batch processor for ProviderTrust.

Groups ungeocoded practice locations by address identity hash, sends each
unique address to the geocoder at most once and fans the single result out
to every row sharing that hash.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from ..storage.cursor import KeysetCursor
from ..storage.database import ProviderStore, format_timestamp, utc_now
from .client import GeocodeOutcome, GeocodeStatus, GoogleGeocoder

logger = logging.getLogger(__name__)

PENDING_ADDRESSES = '''(
    SELECT address_hash,
           MIN(id) AS location_id,
           COUNT(*) AS row_count,
           MIN(UPPER(TRIM(state))) AS state
    FROM practice_locations
    WHERE latitude IS NULL
      AND address_hash IS NOT NULL
      AND (geocode_status IS NULL OR geocode_status = 'error')
    GROUP BY address_hash
) AS pending'''


@dataclass
class GeocodeReport:
    dry_run: bool = True
    unique_addresses: int = 0
    rows_covered: int = 0
    estimated_cost: float = 0.0
    processed: int = 0
    ok: int = 0
    no_result: int = 0
    errors: int = 0
    rows_updated: int = 0
    api_calls: int = 0
    fatal_error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def aborted(self) -> bool:
        return self.fatal_error is not None

    def to_dict(self) -> Dict:
        return {
            "dry_run": self.dry_run,
            "unique_addresses": self.unique_addresses,
            "rows_covered": self.rows_covered,
            "estimated_cost": round(self.estimated_cost, 2),
            "processed": self.processed,
            "ok": self.ok,
            "no_result": self.no_result,
            "errors": self.errors,
            "rows_updated": self.rows_updated,
            "api_calls": self.api_calls,
            "fatal_error": self.fatal_error,
        }

    def print_summary(self):
        print("\n" + "=" * 50)
        print(f"GEOCODING SUMMARY{' (DRY RUN)' if self.dry_run else ''}")
        print("=" * 50)
        print(f"Unique addresses: {self.unique_addresses:,}")
        print(f"Location rows covered: {self.rows_covered:,}")
        if self.dry_run:
            print(f"Estimated cost: ${self.estimated_cost:,.2f}")
        else:
            print(f"Addresses processed: {self.processed:,}")
            print(f"  ok: {self.ok:,}")
            print(f"  no_result: {self.no_result:,}")
            print(f"  error: {self.errors:,}")
            print(f"Location rows updated: {self.rows_updated:,}")
            print(f"Geocoder calls: {self.api_calls:,}")
        if self.fatal_error:
            print(f"ABORTED: {self.fatal_error}")
        print(f"Duration: {self.duration_seconds:.2f} seconds")
        print("=" * 50)


def build_address(location: sqlite3.Row) -> Optional[str]:
    """
    Free-form address for the geocoder.

    Returns None when fewer than three components are present.
    """
    zip_code = (location["zip_code"] or "").strip()[:5]
    parts = [
        location["address_line1"],
        location["address_line2"],
        location["city"],
        location["state"],
        zip_code,
    ]
    parts = [p.strip() for p in parts if p and p.strip()]
    if len(parts) < 3:
        return None
    return ", ".join(parts)


class GeocodingBatchProcessor:
    """
    Resolves unique addresses to coordinates.

    ``no_result`` is terminal and recorded on the rows so later runs skip
    them; ``error`` leaves the rows pending for the next run; ``fatal`` stops
    the run before any further address is attempted.
    """

    def __init__(self, store: ProviderStore, geocoder: Optional[GoogleGeocoder],
                 config: Optional[Dict] = None):
        """
        Initialize processor.

        Args:
            store: Relational store
            geocoder: Geocoding client (None is allowed for dry runs)
            config: Full configuration dictionary
        """
        geocoding_config = (config or {}).get("geocoding", {})
        self.store = store
        self.geocoder = geocoder
        self.batch_size = geocoding_config.get("batch_size", 500)
        self.cost_per_1000 = geocoding_config.get("cost_per_1000", 5.0)
        self.progress_every = geocoding_config.get("progress_every", 100)

    def pending_cursor(self, state: Optional[str] = None,
                       limit: Optional[int] = None) -> KeysetCursor:
        where, params = "", ()
        if state:
            where, params = "state = ?", (state.strip().upper(),)
        return KeysetCursor(self.store, PENDING_ADDRESSES, "address_hash", where=where,
                            params=params, batch_size=self.batch_size, limit=limit)

    def estimate(self, state: Optional[str] = None, limit: Optional[int] = None) -> GeocodeReport:
        """Count unique pending addresses and the cost of geocoding them."""
        report = GeocodeReport(dry_run=True)
        for group in self.pending_cursor(state, limit):
            report.unique_addresses += 1
            report.rows_covered += group["row_count"]
        report.estimated_cost = report.unique_addresses * self.cost_per_1000 / 1000
        return report

    def fan_out(self, address_hash: str, outcome: GeocodeOutcome, now: datetime) -> int:
        """
        Write one outcome to every row sharing the address hash.

        Returns:
            Number of location rows updated
        """
        stamp = format_timestamp(now)
        with self.store.transaction():
            if outcome.status == GeocodeStatus.OK:
                cursor = self.store.execute(
                    '''
                    UPDATE practice_locations
                    SET latitude = ?, longitude = ?, geocoded_at = ?, geocode_status = 'ok',
                        updated_at = ?
                    WHERE address_hash = ?
                    ''',
                    (outcome.latitude, outcome.longitude, stamp, stamp, address_hash),
                )
            elif outcome.status == GeocodeStatus.NO_RESULT:
                cursor = self.store.execute(
                    '''
                    UPDATE practice_locations
                    SET geocode_status = 'no_result', geocoded_at = ?, updated_at = ?
                    WHERE address_hash = ? AND latitude IS NULL
                    ''',
                    (stamp, stamp, address_hash),
                )
            else:
                return 0
        return cursor.rowcount

    def run(self, dry_run: bool = True, limit: Optional[int] = None,
            state: Optional[str] = None, now: Optional[datetime] = None) -> GeocodeReport:
        """
        Geocode pending unique addresses.

        Args:
            dry_run: Only count addresses and estimate cost; no calls, no writes
            limit: Maximum number of unique addresses
            state: Restrict to one state
            now: Timestamp written as ``geocoded_at``

        Returns:
            GeocodeReport
        """
        started = utc_now()
        if dry_run:
            report = self.estimate(state, limit)
            report.duration_seconds = (utc_now() - started).total_seconds()
            logger.info(f"Dry run: {report.unique_addresses} unique addresses, "
                        f"estimated cost ${report.estimated_cost:.2f}")
            return report

        if self.geocoder is None:
            raise ValueError("A geocoder is required unless dry_run is set")

        now = now or utc_now()
        report = GeocodeReport(dry_run=False)
        logger.info(f"Starting geocoding run (limit={limit}, state={state})")

        for group in self.pending_cursor(state, limit):
            report.unique_addresses += 1
            report.rows_covered += group["row_count"]
            location = self.store.get_location(group["location_id"])
            address = build_address(location)

            if address is None:
                outcome = GeocodeOutcome(GeocodeStatus.NO_RESULT, message="Too few address parts")
            else:
                outcome = self.geocoder.geocode(address)
                report.api_calls += 1

            if outcome.status == GeocodeStatus.FATAL:
                report.fatal_error = outcome.message
                logger.error(f"Geocoding aborted at address {report.unique_addresses}: {outcome.message}")
                break

            report.processed += 1
            if outcome.status == GeocodeStatus.OK:
                report.ok += 1
            elif outcome.status == GeocodeStatus.NO_RESULT:
                report.no_result += 1
            else:
                report.errors += 1
                logger.warning(f"Geocoding failed for {address}: {outcome.message}")

            try:
                report.rows_updated += self.fan_out(group["address_hash"], outcome, now)
            except sqlite3.IntegrityError as e:
                report.errors += 1
                logger.error(f"Failed to store geocode for {group['address_hash']}: {e}")

            if report.processed % self.progress_every == 0:
                logger.info(f"Geocoded {report.processed} addresses "
                            f"({report.ok} ok, {report.no_result} no result, {report.errors} errors)")

        report.duration_seconds = (utc_now() - started).total_seconds()
        logger.info(f"Geocoding done: {report.processed} addresses, {report.rows_updated} rows updated")
        return report
