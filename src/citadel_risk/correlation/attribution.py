# PRD: Correlation Module - Threat Attribution
# Reference: docs/ARCHITECTURE.md, Section: Correlation Engine
#
# Infers the most likely actor (and campaign) behind a cluster.
#
# Candidates are the actors declared on cluster members (campaigns when
# no member names an actor). Each candidate is compared against its
# reference profile, i.e. every indicator in the batch that names it:
#   infrastructure overlap  - cluster ip/domain values similar to the
#                             actor's known infrastructure
#   technique similarity    - Jaccard of ATT&CK technique sets
#   timing correlation      - mean best temporal weight to the profile
#
# The three factors are combined by a ScoringProvider. The default
# HeuristicScoringProvider is a fixed weighted sum (0.4 / 0.35 / 0.25),
# so attribution is deterministic; a trained model can be plugged in
# behind the same interface.

from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from ..intel.models import Indicator, IndicatorType
from .models import UNKNOWN_ACTOR, AlternativeAttribution, ThreatAttribution
from .similarity import (
    DOMAIN_LINK_THRESHOLD,
    IP_LINK_THRESHOLD,
    domain_similarity,
    hours_between,
    ip_similarity,
    jaccard,
    temporal_weight,
)

INFRASTRUCTURE_WEIGHT = 0.4
TECHNIQUE_WEIGHT = 0.35
TIMING_WEIGHT = 0.25


@dataclass
class AttributionFeatures:
    """Evidence factors for one (cluster, candidate actor) pair, each 0-1."""

    infrastructure_overlap: float = 0.0
    technique_similarity: float = 0.0
    timing_correlation: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "infrastructure": self.infrastructure_overlap,
            "technique": self.technique_similarity,
            "timing": self.timing_correlation,
        }


class ScoringProvider(Protocol):
    """Turns attribution features into a confidence in [0, 1]."""

    def score(self, features: AttributionFeatures) -> float:
        ...


class HeuristicScoringProvider:
    """Deterministic weighted sum of the three attribution factors."""

    def __init__(
        self,
        infrastructure_weight: float = INFRASTRUCTURE_WEIGHT,
        technique_weight: float = TECHNIQUE_WEIGHT,
        timing_weight: float = TIMING_WEIGHT,
    ):
        self.infrastructure_weight = infrastructure_weight
        self.technique_weight = technique_weight
        self.timing_weight = timing_weight

    def score(self, features: AttributionFeatures) -> float:
        total = (
            self.infrastructure_weight * features.infrastructure_overlap
            + self.technique_weight * features.technique_similarity
            + self.timing_weight * features.timing_correlation
        )
        return max(0.0, min(1.0, total))


# ── Feature extraction ──────────────────────────────────────────────────


def _infrastructure_similar(a: Indicator, b: Indicator) -> bool:
    if a.type != b.type:
        return False
    if a.value == b.value:
        return True
    if a.type == IndicatorType.IP:
        return ip_similarity(a.value, b.value) >= IP_LINK_THRESHOLD
    if a.type == IndicatorType.DOMAIN:
        return domain_similarity(a.value, b.value) >= DOMAIN_LINK_THRESHOLD
    return False


def _is_infrastructure(indicator: Indicator) -> bool:
    return indicator.type in (IndicatorType.IP, IndicatorType.DOMAIN)


def infrastructure_overlap(members: Sequence[Indicator], profile: Sequence[Indicator]) -> float:
    """Fraction of the cluster's ip/domain members that resemble profile
    infrastructure other than themselves."""
    infra = [m for m in members if _is_infrastructure(m)]
    if not infra:
        return 0.0
    reference = [p for p in profile if _is_infrastructure(p)]
    hits = 0
    for member in infra:
        if any(ref.id != member.id and _infrastructure_similar(member, ref) for ref in reference):
            hits += 1
    return hits / len(infra)


def technique_similarity(members: Sequence[Indicator], profile: Sequence[Indicator]) -> float:
    """Mean over technique-bearing members of the Jaccard similarity
    between the member's technique and those of profile indicators other
    than itself."""
    carriers = [m for m in members if m.context.mitre_technique]
    if not carriers:
        return 0.0
    total = 0.0
    for member in carriers:
        others = {
            p.context.mitre_technique
            for p in profile
            if p.id != member.id and p.context.mitre_technique
        }
        total += jaccard({member.context.mitre_technique}, others)
    return total / len(carriers)


def timing_correlation(members: Sequence[Indicator], profile: Sequence[Indicator]) -> float:
    """Mean over dated members of the best temporal weight to the profile."""
    dated_members = [m for m in members if m.first_seen]
    dated_profile = [p for p in profile if p.first_seen]
    if not dated_members or not dated_profile:
        return 0.0
    total = 0.0
    for member in dated_members:
        best = 0.0
        for ref in dated_profile:
            if ref.id == member.id:
                continue
            weight = temporal_weight(hours_between(member.first_seen, ref.first_seen))
            if weight is not None and weight > best:
                best = weight
        total += best
    return total / len(dated_members)


# ── Attributor ──────────────────────────────────────────────────────────


class Attributor:
    """Attributes clusters to actors using a pluggable ScoringProvider."""

    def __init__(self, provider: Optional[ScoringProvider] = None):
        self.provider = provider or HeuristicScoringProvider()

    def features(self, members: Sequence[Indicator], profile: Sequence[Indicator]) -> AttributionFeatures:
        return AttributionFeatures(
            infrastructure_overlap=infrastructure_overlap(members, profile),
            technique_similarity=technique_similarity(members, profile),
            timing_correlation=timing_correlation(members, profile),
        )

    def attribute(
        self,
        members: Sequence[Indicator],
        population: Sequence[Indicator],
    ) -> ThreatAttribution:
        """Attribute ``members`` using ``population`` as the reference set.

        Candidates are the actors named by members. When no member names
        an actor, declared campaigns are scored instead and the actor
        stays "Unknown".
        """
        actors = sorted({m.context.threat_actor for m in members if m.context.threat_actor})
        if actors:
            return self._rank(members, population, actors, by_actor=True)

        campaigns = sorted({m.context.campaign for m in members if m.context.campaign})
        if campaigns:
            return self._rank(members, population, campaigns, by_actor=False)

        confidence = float(self.provider.score(AttributionFeatures()))
        return ThreatAttribution(
            actor=UNKNOWN_ACTOR,
            confidence=max(0.0, min(1.0, confidence)),
            evidence=["No threat actor or campaign declared by any cluster member"],
        )

    def _rank(
        self,
        members: Sequence[Indicator],
        population: Sequence[Indicator],
        candidates: List[str],
        by_actor: bool,
    ) -> ThreatAttribution:
        def label(indicator: Indicator) -> Optional[str]:
            return indicator.context.threat_actor if by_actor else indicator.context.campaign

        scored: List[tuple] = []
        for candidate in candidates:
            profile = [p for p in population if label(p) == candidate]
            features = self.features(members, profile)
            confidence = max(0.0, min(1.0, float(self.provider.score(features))))
            if by_actor:
                campaign = _most_common(
                    [m.context.campaign for m in members if m.context.threat_actor == candidate]
                )
            else:
                campaign = candidate
            scored.append((confidence, candidate, campaign, features))

        # highest confidence first, name breaks ties
        scored.sort(key=lambda item: (-item[0], item[1]))
        confidence, candidate, campaign, features = scored[0]
        declared = sum(1 for m in members if label(m) == candidate)

        evidence = [f"{declared}/{len(members)} cluster members name {candidate}"]
        if features.infrastructure_overlap:
            evidence.append(f"Infrastructure overlap {features.infrastructure_overlap:.2f}")
        if features.technique_similarity:
            evidence.append(f"Technique similarity {features.technique_similarity:.2f}")
        if features.timing_correlation:
            evidence.append(f"Timing correlation {features.timing_correlation:.2f}")

        alternatives = []
        for alt_confidence, alt_candidate, alt_campaign, _ in scored[1:]:
            alternatives.append(
                AlternativeAttribution(
                    actor=alt_candidate if by_actor else UNKNOWN_ACTOR,
                    confidence=alt_confidence,
                    campaign=alt_campaign,
                )
            )

        return ThreatAttribution(
            actor=candidate if by_actor else UNKNOWN_ACTOR,
            campaign=campaign,
            confidence=confidence,
            evidence=evidence,
            factors=features.to_dict(),
            alternatives=alternatives,
        )


def _most_common(values: List[Optional[str]]) -> Optional[str]:
    present = [v for v in values if v]
    if not present:
        return None
    counts = Counter(present)
    top = max(counts.values())
    return sorted(v for v, c in counts.items() if c == top)[0]
