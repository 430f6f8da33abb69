"""
Batch entry points for ProviderTrust.

Each subcommand wires one batch job to the store and its external clients,
runs it (dry run unless ``--apply`` is given) and prints its summary block.
"""

import sys
import time
import logging
import sqlite3
import argparse
from pathlib import Path
from typing import Dict, List, Optional

from ..audit.registry_auditor import AuditReport, RegistryAuditor
from ..audit.registry_client import NppesRegistryClient
from ..config import DEFAULT_CONFIG_PATH, load_config
from ..errors import ConfigurationError, ProviderTrustError
from ..geocode.batch_processor import GeocodeReport, GeocodingBatchProcessor
from ..geocode.client import GoogleGeocoder
from ..ingestion.field_updates import IngestionReport, apply_field_updates, load_field_updates
from ..maintenance.cleanup import CleanupReport, DeactivatedProviderCleanup
from ..match.plan_matcher import MatchReport, PlanMatcher
from ..merge.provenance import ProvenanceMergeEngine
from ..reporting.exports import export_review_files
from ..scoring.confidence_service import ConfidenceService, SweepReport
from ..storage.database import ProviderStore

logger = logging.getLogger(__name__)


class BatchRunner:
    """
    Builds the collaborators for a batch job from configuration.

    The store is opened lazily and shared by every job the runner executes.
    """

    def __init__(self, config_path: str = DEFAULT_CONFIG_PATH, db_path: Optional[str] = None):
        """
        Initialize runner.

        Args:
            config_path: Path to configuration file
            db_path: Database path overriding configuration
        """
        self.config = load_config(config_path)
        self.db_path = db_path or self.config["database"]["path"]
        self._store: Optional[ProviderStore] = None
        self.stage_times: Dict[str, float] = {}

    @property
    def store(self) -> ProviderStore:
        if self._store is None:
            self._store = ProviderStore(self.db_path)
        return self._store

    def close(self):
        if self._store is not None:
            self._store.close()
            self._store = None

    def _start_stage_timer(self, stage_name: str):
        """Start timing for a batch stage."""
        self.stage_times[stage_name] = time.time()
        logger.info(f"Starting stage: {stage_name}")

    def _end_stage_timer(self, stage_name: str):
        """End timing for a batch stage."""
        if stage_name in self.stage_times:
            duration = time.time() - self.stage_times[stage_name]
            logger.info(f"Completed stage: {stage_name} in {duration:.2f} seconds")

    def merge_engine(self) -> ProvenanceMergeEngine:
        return ProvenanceMergeEngine(self.store, self.config)

    def audit(self, dry_run: bool = True, limit: Optional[int] = None, resume: bool = False,
              stale_after_days: Optional[int] = None, full_scan: bool = False) -> AuditReport:
        self._start_stage_timer("registry_audit")
        auditor = RegistryAuditor(
            self.store,
            NppesRegistryClient.from_config(self.config),
            self.merge_engine(),
            self.config,
        )
        report = auditor.run(dry_run=dry_run, limit=limit, resume=resume,
                             stale_after_days=stale_after_days, full_scan=full_scan)
        self._end_stage_timer("registry_audit")
        return report

    def geocode(self, dry_run: bool = True, limit: Optional[int] = None,
                state: Optional[str] = None) -> GeocodeReport:
        self._start_stage_timer("geocoding")
        # Dry runs only estimate, so they do not need an API key
        geocoder = None if dry_run else GoogleGeocoder.from_config(self.config)
        processor = GeocodingBatchProcessor(self.store, geocoder, self.config)
        report = processor.run(dry_run=dry_run, limit=limit, state=state)
        self._end_stage_timer("geocoding")
        return report

    def recalculate_confidence(self, dry_run: bool = True,
                               limit: Optional[int] = None) -> SweepReport:
        self._start_stage_timer("confidence_recalculation")
        service = ConfidenceService(self.store, self.merge_engine(), self.config)
        report = service.recalculate_all(dry_run=dry_run, limit=limit)
        self._end_stage_timer("confidence_recalculation")
        return report

    def match_plans(self, dry_run: bool = True, limit: Optional[int] = None,
                    carrier: Optional[str] = None) -> MatchReport:
        self._start_stage_timer("plan_matching")
        report = PlanMatcher(self.store, self.config).run(dry_run=dry_run, carrier=carrier, limit=limit)
        self._end_stage_timer("plan_matching")
        return report

    def cleanup(self, dry_run: bool = True) -> CleanupReport:
        self._start_stage_timer("deactivated_cleanup")
        report = DeactivatedProviderCleanup(self.store).run(dry_run=dry_run)
        self._end_stage_timer("deactivated_cleanup")
        return report

    def import_updates(self, path: str, dry_run: bool = True,
                       limit: Optional[int] = None) -> IngestionReport:
        self._start_stage_timer("field_update_import")
        updates = load_field_updates(path)
        report = apply_field_updates(self.merge_engine(), updates, dry_run=dry_run, limit=limit)
        self._end_stage_timer("field_update_import")
        return report

    def export(self, output_dir: str, run_id: Optional[int] = None):
        self._start_stage_timer("review_export")
        export_review_files(self.store, output_dir, run_id)
        self._end_stage_timer("review_export")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ProviderTrust batch jobs")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Configuration file path")
    parser.add_argument("--db", help="Database path (overrides configuration)")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--apply", action="store_true", help="Write changes (default is a dry run)")
    common.add_argument("--limit", type=int, help="Maximum number of records to process")

    commands = parser.add_subparsers(dest="command", required=True)

    audit = commands.add_parser("audit", parents=[common], help="Reconcile providers against the NPI registry")
    audit.add_argument("--resume", action="store_true", help="Only providers never reconciled")
    audit.add_argument("--stale-days", type=int, help="Only providers reconciled longer ago than this")
    audit.add_argument("--full-scan", action="store_true", help="Every provider regardless of watermark")

    geocode = commands.add_parser("geocode", parents=[common], help="Geocode pending practice addresses")
    geocode.add_argument("--state", help="Restrict to one state")

    commands.add_parser("confidence", parents=[common], help="Recalculate stored confidence scores")

    match = commands.add_parser("match", parents=[common], help="Match network names to plans")
    match.add_argument("--carrier", help="Only match network names resembling this carrier")

    cleanup = commands.add_parser("cleanup", help="Remove deactivated providers")
    cleanup.add_argument("--apply", action="store_true", help="Delete (default is a dry run)")

    import_cmd = commands.add_parser("import", parents=[common], help="Apply a field-update CSV")
    import_cmd.add_argument("path", help="CSV with entity_table, entity_key, field, value, source_tier")

    export = commands.add_parser("export", help="Write discrepancies and conflicts to CSV")
    export.add_argument("output", help="Output directory")
    export.add_argument("--run-id", type=int, help="Restrict discrepancies to one audit run")

    return parser


def run_command(runner: BatchRunner, args: argparse.Namespace) -> int:
    """
    Run one subcommand and print its summary.

    Returns:
        Process exit code
    """
    dry_run = not getattr(args, "apply", False)
    limit = getattr(args, "limit", None)

    if args.command == "audit":
        report = runner.audit(dry_run=dry_run, limit=limit, resume=args.resume,
                              stale_after_days=args.stale_days, full_scan=args.full_scan)
        report.print_summary()
        return 1 if report.fatal_error else 0

    if args.command == "geocode":
        report = runner.geocode(dry_run=dry_run, limit=limit, state=args.state)
        report.print_summary()
        return 1 if report.aborted else 0

    if args.command == "confidence":
        runner.recalculate_confidence(dry_run=dry_run, limit=limit).print_summary()
    elif args.command == "match":
        runner.match_plans(dry_run=dry_run, limit=limit, carrier=args.carrier).print_summary()
    elif args.command == "cleanup":
        runner.cleanup(dry_run=dry_run).print_summary()
    elif args.command == "import":
        runner.import_updates(args.path, dry_run=dry_run, limit=limit).print_summary()
    elif args.command == "export":
        runner.export(args.output, args.run_id)
    return 0


def main(argv: Optional[List[str]] = None):
    """Main entry point for ProviderTrust batch jobs."""
    args = build_parser().parse_args(argv)

    Path("logs").mkdir(exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler("logs/provider_trust.log")
        ]
    )

    runner = None
    try:
        runner = BatchRunner(args.config, args.db)
        exit_code = run_command(runner, args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        exit_code = 1
    except sqlite3.Error as e:
        logger.error(f"Store failure: {e}")
        exit_code = 1
    except ProviderTrustError as e:
        logger.error(f"Batch job failed: {e}")
        exit_code = 1
    except (OSError, ValueError) as e:
        logger.error(f"Invalid input: {e}")
        exit_code = 1
    finally:
        if runner is not None:
            runner.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
