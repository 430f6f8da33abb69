"""
Fuzzy plan matcher for ProviderTrust.

Resolves free-text insurance network names seen on providers to the carrier
or issuer identity of canonical plans and seeds PENDING plan acceptances for
confident matches. Ambiguous matches are only reported.
"""

import re
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional

from thefuzz import fuzz

from ..merge.provenance import ACCEPTANCES
from ..merge.tiers import SourceTier
from ..scoring.confidence import TIER_DEFAULT_CONFIDENCE
from ..storage.database import ProviderStore, expiry_after, utc_now

logger = logging.getLogger(__name__)

EXACT_SCORE = 1.0
CONTAINMENT_SCORE = 0.85
LINK_TIER = SourceTier.BULK_SCRAPE

_non_alphanumeric = re.compile(r"[^a-z0-9]")


class MatchClass(str, Enum):
    ACCEPTED = "accepted"
    AMBIGUOUS = "ambiguous"
    REJECTED = "rejected"


@dataclass
class PlanMatch:
    network_name: str
    candidate: str
    score: float
    match_class: MatchClass


@dataclass
class MatchReport:
    dry_run: bool = True
    networks_inspected: int = 0
    matched: int = 0
    unmatched: int = 0
    ambiguous: List[PlanMatch] = field(default_factory=list)
    new_links: int = 0
    existing_links: int = 0
    errors: int = 0

    @property
    def ambiguous_skipped(self) -> int:
        return len(self.ambiguous)

    def to_dict(self) -> Dict:
        return {
            "dry_run": self.dry_run,
            "networks_inspected": self.networks_inspected,
            "matched": self.matched,
            "unmatched": self.unmatched,
            "ambiguous_skipped": self.ambiguous_skipped,
            "new_links": self.new_links,
            "existing_links": self.existing_links,
            "errors": self.errors,
        }

    def print_summary(self):
        print("\n" + "=" * 50)
        print(f"PLAN MATCHING SUMMARY{' (DRY RUN)' if self.dry_run else ''}")
        print("=" * 50)
        print(f"Network names inspected: {self.networks_inspected:,}")
        print(f"Matched: {self.matched:,}")
        print(f"Unmatched: {self.unmatched:,}")
        print(f"Ambiguous (manual review): {self.ambiguous_skipped:,}")
        for match in self.ambiguous:
            print(f"  '{match.network_name}' ~ '{match.candidate}' ({match.score:.2f})")
        print(f"New provider/plan links: {self.new_links:,}")
        print(f"Already linked: {self.existing_links:,}")
        print(f"Errors: {self.errors:,}")
        print("=" * 50)


def normalize_name(name: Optional[str]) -> str:
    """Lowercase and drop everything but letters and digits."""
    return _non_alphanumeric.sub("", (name or "").lower())


def similarity(a: str, b: str) -> float:
    """
    Score two names in [0, 1].

    Args:
        a: Free-text network name
        b: Candidate carrier or issuer name

    Returns:
        1.0 for an exact normalized match, 0.85 for containment either way,
        otherwise twice the number of tokens of ``a`` found in ``b`` over the
        total token count; repeated tokens count every time they occur
    """
    norm_a, norm_b = normalize_name(a), normalize_name(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return EXACT_SCORE
    if norm_a in norm_b or norm_b in norm_a:
        return CONTAINMENT_SCORE

    tokens_a = a.lower().split()
    tokens_b = b.lower().split()
    if not tokens_a or not tokens_b:
        return 0.0
    overlap = len([token for token in tokens_a if token in tokens_b])
    return 2 * overlap / (len(tokens_a) + len(tokens_b))


class PlanMatcher:
    """
    Matches network names to plan carrier/issuer identities.

    Candidates tied on score are ordered by thefuzz token-sort ratio and then
    alphabetically, so the result does not depend on row order.
    """

    def __init__(self, store: ProviderStore, config: Optional[Dict] = None):
        """
        Initialize matcher.

        Args:
            store: Relational store
            config: Full configuration dictionary
        """
        config = config or {}
        matching = config.get("matching", {})
        self.store = store
        self.accept_threshold = matching.get("accept_threshold", 0.80)
        self.ambiguous_threshold = matching.get("ambiguous_threshold", 0.70)
        self.ttl_months = config.get("confidence", {}).get("verification_ttl_months", 6)

        logger.info("Initialized PlanMatcher")

    def classify(self, score: float) -> MatchClass:
        if score >= self.accept_threshold:
            return MatchClass.ACCEPTED
        if score >= self.ambiguous_threshold:
            return MatchClass.AMBIGUOUS
        return MatchClass.REJECTED

    def best_match(self, network_name: str, candidates: Iterable[str]) -> Optional[PlanMatch]:
        """
        Best candidate for a network name.

        Args:
            network_name: Free-text name
            candidates: Carrier and issuer names

        Returns:
            PlanMatch, or None when no candidate reaches the ambiguous band
        """
        scored = [(similarity(network_name, c), fuzz.token_sort_ratio(network_name, c), c)
                  for c in set(candidates) if c]
        if not scored:
            return None

        scored.sort(key=lambda item: (-item[0], -item[1], item[2]))
        score, _, candidate = scored[0]
        match_class = self.classify(score)
        if match_class == MatchClass.REJECTED:
            return None
        return PlanMatch(network_name, candidate, score, match_class)

    def candidates(self) -> List[str]:
        rows = self.store.fetchall(
            '''
            SELECT carrier AS name FROM insurance_plans WHERE carrier IS NOT NULL
            UNION
            SELECT issuer_name AS name FROM insurance_plans WHERE issuer_name IS NOT NULL
            '''
        )
        return [row["name"] for row in rows if row["name"] and row["name"].strip()]

    def _link(self, match: PlanMatch, dry_run: bool, report: MatchReport, now: datetime):
        npis = [row["npi"] for row in self.store.fetchall(
            "SELECT DISTINCT npi FROM provider_insurance WHERE network_name = ? ORDER BY npi",
            (match.network_name,),
        )]
        plan_ids = [row["plan_id"] for row in self.store.fetchall(
            "SELECT plan_id FROM insurance_plans WHERE carrier = ? OR issuer_name = ? ORDER BY plan_id",
            (match.candidate, match.candidate),
        )]

        new_links = existing = 0
        with self.store.transaction():
            for npi in npis:
                for plan_id in plan_ids:
                    linked = self.store.fetchone(
                        "SELECT 1 FROM provider_plan_acceptance WHERE npi = ? AND plan_id = ? LIMIT 1",
                        (npi, plan_id),
                    )
                    if linked:
                        existing += 1
                        continue
                    new_links += 1
                    if dry_run:
                        continue
                    acceptance_id = self.store.insert_acceptance(
                        npi, plan_id, None, "PENDING", TIER_DEFAULT_CONFIDENCE[LINK_TIER],
                        expiry_after(now, self.ttl_months), now, origin_source=LINK_TIER.label,
                    )
                    for field_name in ("acceptance_status", "confidence_score"):
                        self.store.set_field_source(ACCEPTANCES, acceptance_id, field_name,
                                                    LINK_TIER.label, now)

        report.new_links += new_links
        report.existing_links += existing

    def run(self, dry_run: bool = True, carrier: Optional[str] = None,
            limit: Optional[int] = None, now: Optional[datetime] = None) -> MatchReport:
        """
        Match every distinct network name and link confident matches.

        Args:
            dry_run: Count links without inserting
            carrier: Only match network names resembling this carrier; they are
                still matched against every carrier and issuer
            limit: Maximum number of network names
            now: Timestamp for new acceptances

        Returns:
            MatchReport
        """
        now = now or utc_now()
        report = MatchReport(dry_run=dry_run)
        candidates = self.candidates()

        networks = [row["network_name"] for row in self.store.fetchall(
            "SELECT DISTINCT network_name FROM provider_insurance ORDER BY network_name"
        )]
        if carrier:
            networks = [n for n in networks if similarity(n, carrier) >= self.ambiguous_threshold]
        if limit is not None:
            networks = networks[:limit]
        logger.info(f"Matching {len(networks)} network names against {len(candidates)} candidates")

        for network_name in networks:
            report.networks_inspected += 1
            match = self.best_match(network_name, candidates)

            if match is None:
                report.unmatched += 1
                continue
            if match.match_class == MatchClass.AMBIGUOUS:
                report.ambiguous.append(match)
                logger.info(f"Ambiguous: '{network_name}' ~ '{match.candidate}' ({match.score:.2f})")
                continue

            report.matched += 1
            try:
                self._link(match, dry_run, report, now)
            except sqlite3.IntegrityError as e:
                report.errors += 1
                logger.error(f"Failed to link '{network_name}' to '{match.candidate}': {e}")

        logger.info(f"Plan matching done: {report.matched} matched, {report.new_links} new links, "
                    f"{report.ambiguous_skipped} ambiguous")
        return report
