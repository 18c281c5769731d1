# PRD: Correlation Module - Indicator Clustering & Attribution
# Reference: docs/ARCHITECTURE.md

from .models import (
    AlternativeAttribution,
    ClusterType,
    CorrelationCluster,
    CorrelationRun,
    EvidenceStrength,
    TemporalLink,
    ThreatAttribution,
)
from .similarity import domain_similarity, ip_similarity, longest_common_substring, temporal_weight
from .attribution import AttributionFeatures, Attributor, HeuristicScoringProvider, ScoringProvider
from .store import ClusterStore, DuplicateRun
from .engine import CorrelationEngine, cluster_confidence, cluster_risk_level

__all__ = [
    "AlternativeAttribution",
    "ClusterType",
    "CorrelationCluster",
    "CorrelationRun",
    "EvidenceStrength",
    "TemporalLink",
    "ThreatAttribution",
    "domain_similarity",
    "ip_similarity",
    "longest_common_substring",
    "temporal_weight",
    "AttributionFeatures",
    "Attributor",
    "HeuristicScoringProvider",
    "ScoringProvider",
    "ClusterStore",
    "DuplicateRun",
    "CorrelationEngine",
    "cluster_confidence",
    "cluster_risk_level",
]
