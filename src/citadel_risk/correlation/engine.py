# PRD: Correlation Module - Correlation Engine
# Reference: docs/ARCHITECTURE.md, Section: Correlation Engine
#
# Clusters one batch of indicators per pass. Strategies:
#   1. Infrastructure - IP / domain similarity graph, connected components
#   2. Temporal       - 24h windows over first_seen, min 3 members
#   3. Behavioral     - identical "<technique>-<kill chain phase>", min 2
#   4. Campaign       - shared declared campaign (or actor), min 2
#   5. Attribution    - clusters above attributed with confidence > 0.6,
#                       regrouped per actor
#
# Each indicator lands in at most one cluster per strategy per pass.
# A pass produces a CorrelationRun stored under its run id in the
# injected ClusterStore; earlier runs are never touched.
#
# Design principles:
#   - CPU-bound, one synchronous pass per batch
#   - Attribution failure for one cluster never aborts the pass
#   - No module-level state; store and attributor are injected

import logging
from collections import defaultdict
from datetime import datetime
from itertools import combinations
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import uuid4

from ..core.audit_log import EventSeverity, EventType, log_audit_event
from ..intel.models import Indicator, IndicatorType, Severity, utcnow
from .attribution import Attributor
from .models import (
    ClusterType,
    CorrelationCluster,
    CorrelationRun,
    TemporalLink,
    ThreatAttribution,
)
from .similarity import (
    DOMAIN_LINK_THRESHOLD,
    IP_LINK_THRESHOLD,
    domain_similarity,
    hours_between,
    ip_similarity,
    jaccard,
    temporal_weight,
)
from .store import ClusterStore

logger = logging.getLogger(__name__)


# ── Tuning Constants ────────────────────────────────────────────────


TEMPORAL_WINDOW_HOURS = 24.0
MIN_TEMPORAL_MEMBERS = 3
MIN_BEHAVIORAL_MEMBERS = 2
MIN_CAMPAIGN_MEMBERS = 2
MIN_ATTRIBUTION_MEMBERS = 2

# Attribution confidence above which a cluster is regrouped per actor
ATTRIBUTION_CLUSTER_THRESHOLD = 0.6
MAX_CLUSTER_CONFIDENCE = 0.95


# ── Helpers ─────────────────────────────────────────────────────────


def cluster_confidence(strength: float, member_count: int) -> float:
    """More corroborating members raise confidence, capped at 0.95."""
    return min(MAX_CLUSTER_CONFIDENCE, 0.5 * strength + 0.1 * member_count)


def cluster_risk_level(members: Sequence[Indicator]) -> Severity:
    """Average severity rank >= 3.5 critical, >= 2.5 high, else medium."""
    if not members:
        return Severity.MEDIUM
    average = sum(m.severity.rank for m in members) / len(members)
    if average >= 3.5:
        return Severity.CRITICAL
    if average >= 2.5:
        return Severity.HIGH
    return Severity.MEDIUM


def mean_pairwise(members: Sequence[Indicator], pair_score: Callable[[Indicator, Indicator], float]) -> float:
    pairs = list(combinations(members, 2))
    if not pairs:
        return 0.0
    return sum(pair_score(a, b) for a, b in pairs) / len(pairs)


def behavior_signature(indicator: Indicator) -> Optional[str]:
    """``"<technique>-<phase>"``; None when the indicator declares neither."""
    technique = indicator.context.mitre_technique
    phase = indicator.context.kill_chain_phase
    if not technique and not phase:
        return None
    return f"{technique or 'unknown'}-{phase or 'unknown'}"


def campaign_key(indicator: Indicator) -> Optional[str]:
    return indicator.context.campaign or indicator.context.threat_actor


def _infrastructure_pair(a: Indicator, b: Indicator) -> float:
    if a.type == IndicatorType.IP:
        return ip_similarity(a.value, b.value)
    return domain_similarity(a.value, b.value)


def _temporal_pair(a: Indicator, b: Indicator) -> float:
    return temporal_weight(hours_between(a.first_seen, b.first_seen)) or 0.0


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return a is not None and a == b


def _behavioral_pair(a: Indicator, b: Indicator) -> float:
    score = 0.5
    if _same(a.context.malware_family, b.context.malware_family):
        score += 0.25
    return score + 0.25 * jaccard(a.tags, b.tags)


def _campaign_pair(a: Indicator, b: Indicator) -> float:
    score = 0.5
    if _same(a.context.malware_family, b.context.malware_family):
        score += 0.25
    if _same(a.context.mitre_technique, b.context.mitre_technique):
        score += 0.25
    return score


class _DisjointSet:
    """Union-find over indicator ids."""

    def __init__(self, items: Iterable[str]):
        self._parent = {item: item for item in items}

    def find(self, item: str) -> str:
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            self._parent[max(root_a, root_b)] = min(root_a, root_b)

    def groups(self) -> List[List[str]]:
        grouped: Dict[str, List[str]] = defaultdict(list)
        for item in self._parent:
            grouped[self.find(item)].append(item)
        return list(grouped.values())


# ── Engine ──────────────────────────────────────────────────────────


class CorrelationEngine:
    """Multi-strategy indicator clustering with actor attribution.

    Usage::

        engine = CorrelationEngine(store=ClusterStore())
        run = engine.correlate(indicators)
        for cluster in run.clusters:
            print(cluster.cluster_type, cluster.attribution.actor)
    """

    def __init__(
        self,
        store: Optional[ClusterStore] = None,
        attributor: Optional[Attributor] = None,
        temporal_window_hours: float = TEMPORAL_WINDOW_HOURS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store if store is not None else ClusterStore()
        self.attributor = attributor or Attributor()
        self.temporal_window_hours = temporal_window_hours
        self._clock = clock

    def correlate(
        self,
        indicators: Iterable[Indicator],
        window: Optional[Tuple[datetime, datetime]] = None,
        run_id: Optional[str] = None,
    ) -> CorrelationRun:
        """Cluster one batch and store the run.

        Args:
            indicators: the batch; duplicate ids are collapsed.
            window: optional inclusive ``(start, end)`` on first_seen.
                Undated indicators are excluded when a window is given.
            run_id: explicit run id (generated when omitted).
        """
        batch = self._prepare(indicators, window)
        run = CorrelationRun(
            run_id=run_id or f"run_{uuid4().hex[:12]}",
            started=self._clock(),
            indicator_count=len(batch),
        )

        clusters: List[CorrelationCluster] = []
        clusters.extend(self._infrastructure_clusters(batch))
        clusters.extend(self._temporal_clusters(batch))
        clusters.extend(self._behavioral_clusters(batch))
        clusters.extend(self._campaign_clusters(batch))

        by_id = {ind.id: ind for ind in batch}
        for cluster in clusters:
            self._attribute(cluster, by_id, batch, run)
        clusters.extend(self._attribution_clusters(clusters, by_id))

        for cluster in clusters:
            cluster.run_id = run.run_id
        run.clusters = clusters
        run.temporal_links = self.temporal_links(batch)
        run.finished = self._clock()

        self.store.save_run(run)
        logger.info(
            "Correlation run %s: %d indicators, %d clusters, %d errors",
            run.run_id,
            run.indicator_count,
            len(run.clusters),
            len(run.errors),
        )
        log_audit_event(
            EventType.CORRELATION_RUN,
            EventSeverity.INFO,
            f"Correlation run {run.run_id} produced {len(run.clusters)} clusters",
            details={
                "run_id": run.run_id,
                "indicators": run.indicator_count,
                "clusters": {t.value: len(run.clusters_of(t)) for t in ClusterType},
                "errors": len(run.errors),
            },
        )
        return run

    @staticmethod
    def _prepare(
        indicators: Iterable[Indicator],
        window: Optional[Tuple[datetime, datetime]],
    ) -> List[Indicator]:
        seen: Set[str] = set()
        batch: List[Indicator] = []
        for indicator in indicators:
            if indicator.id in seen:
                continue
            if window is not None:
                start, end = window
                if indicator.first_seen is None or not (start <= indicator.first_seen <= end):
                    continue
            seen.add(indicator.id)
            batch.append(indicator)
        return batch

    # ── Cluster construction ───────────────────────────────────────

    def _build(
        self,
        cluster_type: ClusterType,
        members: List[Indicator],
        strength: float,
        label: str,
        evidence: List[str],
    ) -> CorrelationCluster:
        dated = [m.first_seen for m in members if m.first_seen]
        last = [m.last_seen or m.first_seen for m in members if m.last_seen or m.first_seen]
        return CorrelationCluster(
            cluster_type=cluster_type,
            member_ids=[m.id for m in members],
            label=label,
            correlation_strength=strength,
            cluster_confidence=cluster_confidence(strength, len(members)),
            risk_level=cluster_risk_level(members),
            first_seen=min(dated) if dated else None,
            last_seen=max(last) if last else None,
            evidence=evidence,
        )

    # ── Strategy 1: Infrastructure ─────────────────────────────────

    def _infrastructure_clusters(self, batch: Sequence[Indicator]) -> List[CorrelationCluster]:
        clusters = []
        for indicator_type, similarity, threshold in (
            (IndicatorType.IP, ip_similarity, IP_LINK_THRESHOLD),
            (IndicatorType.DOMAIN, domain_similarity, DOMAIN_LINK_THRESHOLD),
        ):
            nodes = [ind for ind in batch if ind.type == indicator_type]
            if len(nodes) < 2:
                continue
            links = _DisjointSet(ind.id for ind in nodes)
            for a, b in combinations(nodes, 2):
                if similarity(a.value, b.value) >= threshold:
                    links.union(a.id, b.id)

            by_id = {ind.id: ind for ind in nodes}
            for group in links.groups():
                if len(group) < 2:
                    continue
                members = sorted((by_id[i] for i in group), key=lambda ind: ind.value)
                strength = mean_pairwise(members, _infrastructure_pair)
                clusters.append(
                    self._build(
                        ClusterType.INFRASTRUCTURE,
                        members,
                        strength,
                        label=f"{indicator_type.value}:{members[0].value} +{len(members) - 1}",
                        evidence=[
                            f"{len(members)} {indicator_type.value} indicators linked at "
                            f">= {threshold} similarity",
                        ],
                    )
                )
        return clusters

    # ── Strategy 2: Temporal ───────────────────────────────────────

    def _temporal_clusters(self, batch: Sequence[Indicator]) -> List[CorrelationCluster]:
        dated = sorted((ind for ind in batch if ind.first_seen), key=lambda ind: ind.first_seen)
        processed: Set[str] = set()
        clusters = []
        for i, anchor in enumerate(dated):
            if anchor.id in processed:
                continue
            members = [anchor]
            for candidate in dated[i + 1:]:
                if hours_between(candidate.first_seen, anchor.first_seen) > self.temporal_window_hours:
                    break
                if candidate.id not in processed:
                    members.append(candidate)
            if len(members) < MIN_TEMPORAL_MEMBERS:
                continue
            processed.update(m.id for m in members)
            strength = mean_pairwise(members, _temporal_pair)
            clusters.append(
                self._build(
                    ClusterType.TEMPORAL,
                    members,
                    strength,
                    label=f"window:{anchor.first_seen.isoformat()}",
                    evidence=[
                        f"{len(members)} indicators first seen within "
                        f"{self.temporal_window_hours:g}h of {anchor.first_seen.isoformat()}",
                    ],
                )
            )
        return clusters

    def temporal_links(self, indicators: Iterable[Indicator]) -> List[TemporalLink]:
        """Pairwise temporal correlations; gaps beyond a week are not linked."""
        dated = sorted((ind for ind in indicators if ind.first_seen), key=lambda ind: ind.first_seen)
        links = []
        for i, primary in enumerate(dated):
            for related in dated[i + 1:]:
                gap = hours_between(primary.first_seen, related.first_seen)
                weight = temporal_weight(gap)
                if weight is None:
                    break
                links.append(TemporalLink(primary.id, related.id, gap, weight))
        return links

    # ── Strategy 3: Behavioral ─────────────────────────────────────

    def _behavioral_clusters(self, batch: Sequence[Indicator]) -> List[CorrelationCluster]:
        groups: Dict[str, List[Indicator]] = defaultdict(list)
        for indicator in batch:
            signature = behavior_signature(indicator)
            if signature:
                groups[signature].append(indicator)

        clusters = []
        for signature in sorted(groups):
            members = groups[signature]
            if len(members) < MIN_BEHAVIORAL_MEMBERS:
                continue
            clusters.append(
                self._build(
                    ClusterType.BEHAVIORAL,
                    members,
                    mean_pairwise(members, _behavioral_pair),
                    label=signature,
                    evidence=[f"{len(members)} indicators share behavior {signature}"],
                )
            )
        return clusters

    # ── Strategy 4: Campaign ───────────────────────────────────────

    def _campaign_clusters(self, batch: Sequence[Indicator]) -> List[CorrelationCluster]:
        groups: Dict[str, List[Indicator]] = defaultdict(list)
        for indicator in batch:
            key = campaign_key(indicator)
            if key:
                groups[key].append(indicator)

        clusters = []
        for key in sorted(groups):
            members = groups[key]
            if len(members) < MIN_CAMPAIGN_MEMBERS:
                continue
            clusters.append(
                self._build(
                    ClusterType.CAMPAIGN,
                    members,
                    mean_pairwise(members, _campaign_pair),
                    label=key,
                    evidence=[f"{len(members)} indicators declare campaign/actor {key}"],
                )
            )
        return clusters

    # ── Strategy 5: Attribution ────────────────────────────────────

    def _attribute(
        self,
        cluster: CorrelationCluster,
        by_id: Dict[str, Indicator],
        batch: Sequence[Indicator],
        run: CorrelationRun,
    ) -> None:
        members = [by_id[i] for i in cluster.member_ids]
        try:
            cluster.attribution = self.attributor.attribute(members, batch)
        except Exception as exc:
            logger.warning(
                "Attribution failed for %s cluster %s: %s",
                cluster.cluster_type.value,
                cluster.cluster_id,
                exc,
            )
            run.errors.append(f"{cluster.cluster_id}: {exc}")
            cluster.attribution = ThreatAttribution(evidence=[f"Attribution failed: {exc}"])
            cluster.cluster_confidence = 0.0

    def _attribution_clusters(
        self,
        clusters: Sequence[CorrelationCluster],
        by_id: Dict[str, Indicator],
    ) -> List[CorrelationCluster]:
        confident = [
            c
            for c in clusters
            if c.attribution is not None
            and c.attribution.confidence > ATTRIBUTION_CLUSTER_THRESHOLD
            and (c.attribution.attributed or c.attribution.campaign)
        ]
        # strongest attribution claims an indicator first
        confident.sort(key=lambda c: (-c.attribution.confidence, c.cluster_id))

        processed: Set[str] = set()
        grouped: Dict[str, List[str]] = defaultdict(list)
        sources: Dict[str, List[CorrelationCluster]] = defaultdict(list)
        for cluster in confident:
            attribution = cluster.attribution
            key = attribution.actor if attribution.attributed else f"campaign:{attribution.campaign}"
            sources[key].append(cluster)
            for member_id in cluster.member_ids:
                if member_id not in processed:
                    processed.add(member_id)
                    grouped[key].append(member_id)

        result = []
        for key in sorted(grouped):
            if len(grouped[key]) < MIN_ATTRIBUTION_MEMBERS:
                continue
            members = [by_id[i] for i in grouped[key]]
            origin = sources[key]
            strength = sum(c.attribution.confidence for c in origin) / len(origin)
            cluster = self._build(
                ClusterType.ATTRIBUTION,
                members,
                strength,
                label=key,
                evidence=[
                    f"{c.cluster_type.value} cluster {c.cluster_id} attributed at "
                    f"{c.attribution.confidence:.2f}"
                    for c in origin
                ],
            )
            cluster.attribution = origin[0].attribution
            result.append(cluster)
        return result
