# PRD: Risk Module - Dynamic Risk Lifecycle
# Reference: docs/ARCHITECTURE.md
#
# Rule-driven risk creation from threat intelligence, the audited risk
# state machine and contextual risk scoring.

from .models import (
    DynamicRisk,
    DynamicState,
    FrameworkMapping,
    StateTransition,
    TISourceRecord,
    confidence_to_level,
)
from .store import RiskStore
from .state_machine import (
    ALLOWED_TRANSITIONS,
    InvalidTransition,
    RiskNotFound,
    RiskStateMachine,
    is_valid_transition,
)
from .rules import (
    RiskAssessment,
    RiskCreationRule,
    RuleActions,
    RuleConditions,
    RuleEngine,
    estimate_impact,
    estimate_probability,
)
from .pipeline import (
    IngestionPipeline,
    PipelineBusy,
    PipelineReport,
    ProcessingAction,
    ProcessingDecision,
)
from .scoring import (
    ContextualRiskScore,
    ContextualRiskScorer,
    IntelligenceQuality,
    OrganizationalContext,
    OrganizationSize,
    RiskTrend,
    ScoreFactor,
    ScoreMultipliers,
    ThreatLandscape,
    TrendDirection,
    calculate_trend,
)

__all__ = [
    "DynamicRisk",
    "DynamicState",
    "FrameworkMapping",
    "StateTransition",
    "TISourceRecord",
    "confidence_to_level",
    "RiskStore",
    "ALLOWED_TRANSITIONS",
    "InvalidTransition",
    "RiskNotFound",
    "RiskStateMachine",
    "is_valid_transition",
    "RiskAssessment",
    "RiskCreationRule",
    "RuleActions",
    "RuleConditions",
    "RuleEngine",
    "estimate_impact",
    "estimate_probability",
    "IngestionPipeline",
    "PipelineBusy",
    "PipelineReport",
    "ProcessingAction",
    "ProcessingDecision",
    "ContextualRiskScore",
    "ContextualRiskScorer",
    "IntelligenceQuality",
    "OrganizationalContext",
    "OrganizationSize",
    "RiskTrend",
    "ScoreFactor",
    "ScoreMultipliers",
    "ThreatLandscape",
    "TrendDirection",
    "calculate_trend",
]
