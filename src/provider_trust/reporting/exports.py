"""
CSV exports of the append-only audit tables for operator review.
"""

import logging
from pathlib import Path
from typing import Optional

import pandas as pd

from ..storage.database import ProviderStore

logger = logging.getLogger(__name__)


def discrepancies_frame(store: ProviderStore, run_id: Optional[int] = None,
                        include_resolved: bool = False) -> pd.DataFrame:
    """
    Discrepancy records as a DataFrame, most severe first.

    Args:
        store: Relational store
        run_id: Restrict to one auditor run
        include_resolved: Also return resolved records

    Returns:
        DataFrame of data_quality_audit rows
    """
    clauses, params = [], []
    if run_id is not None:
        clauses.append("run_id = ?")
        params.append(run_id)
    if not include_resolved:
        clauses.append("resolved = 0")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    df = pd.read_sql_query(f"SELECT * FROM data_quality_audit {where} ORDER BY id",
                           store.conn, params=params)
    severity_order = {"CRITICAL": 0, "WARNING": 1, "INFO": 2}
    if not df.empty:
        df = (df.assign(_rank=df["severity"].map(severity_order))
                .sort_values(["_rank", "npi", "id"])
                .drop(columns="_rank")
                .reset_index(drop=True))
    return df


def conflicts_frame(store: ProviderStore, resolution: Optional[str] = "pending") -> pd.DataFrame:
    """Import conflicts as a DataFrame; ``resolution=None`` returns all."""
    if resolution is None:
        return pd.read_sql_query("SELECT * FROM import_conflicts ORDER BY id", store.conn)
    return pd.read_sql_query("SELECT * FROM import_conflicts WHERE resolution = ? ORDER BY id",
                             store.conn, params=[resolution])


def export_review_files(store: ProviderStore, output_dir: str,
                        run_id: Optional[int] = None) -> None:
    """Write discrepancies.csv and import_conflicts.csv into ``output_dir``."""
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    discrepancies = discrepancies_frame(store, run_id)
    discrepancies.to_csv(output_path / "discrepancies.csv", index=False)

    conflicts = conflicts_frame(store)
    conflicts.to_csv(output_path / "import_conflicts.csv", index=False)

    logger.info(f"Exported {len(discrepancies)} discrepancies and {len(conflicts)} "
                f"conflicts to {output_dir}")
