# PRD: Risk Module - Risk Creation Rules
# Reference: docs/ARCHITECTURE.md, Section: Ingestion Pipeline
#
# Operator-configured rules deciding when an indicator becomes a risk.
#
# Rule JSON:
#   {
#     "id": "kev-critical",
#     "conditions": {"sources": [...], "indicatorTypes": [...],
#                    "confidenceMin": 0.7, "severityMin": "high",
#                    "tags": [...], "customConditions": {"cvss_score": {">=": 9}}},
#     "actions": {"createRisk": true, "autoPromoteToDraft": true,
#                 "assignPriority": "critical"}
#   }
#
# Conditions are a conjunction; every configured predicate must hold.
# Rules are validated with pydantic on load; a rule that fails
# validation or raises during evaluation is skipped and logged.
#
# Confidences are 0-1 fractions; numbers above 1 are read as percentages
# and "N%" strings always are, so 1 means 100% and "1%" means 0.01.

import logging
import operator
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..intel.models import Indicator, IndicatorType, Severity

logger = logging.getLogger(__name__)

DEFAULT_CREATE_THRESHOLD = 0.6

OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
    "==": operator.eq,
    "!=": operator.ne,
}

# Numeric indicator fields a custom condition may reference
CUSTOM_FIELDS = ("cvss_score", "epss_score", "confidence")

PRIORITIES = ("low", "medium", "high", "critical")


def _fraction(value: Any) -> Any:
    """Normalize a confidence to a 0-1 fraction.

    Strings ending in "%" are percentages ("1%" is 0.01). Bare numbers up
    to 1 are fractions and larger ones percentages, so 1 means 100%.
    Anything else is returned as is for field validation to reject.
    """
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("%"):
            try:
                return float(text[:-1]) / 100.0
            except ValueError:
                return value
        try:
            value = float(text)
        except ValueError:
            return value
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return value
    return value / 100.0 if value > 1 else float(value)


class RuleConditions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    sources: Optional[List[str]] = None
    indicator_types: Optional[List[IndicatorType]] = Field(default=None, alias="indicatorTypes")
    confidence_min: Optional[float] = Field(default=None, alias="confidenceMin", ge=0, le=1)
    severity_min: Optional[Severity] = Field(default=None, alias="severityMin")
    tags: Optional[List[str]] = None
    custom_conditions: Dict[str, Dict[str, float]] = Field(
        default_factory=dict, alias="customConditions"
    )

    @model_validator(mode="before")
    @classmethod
    def fold_legacy_keys(cls, data: Any) -> Any:
        """Accept the flat form ``{"source": "nvd", "cvss_score": {">=": 9}}``."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        source = data.pop("source", None)
        if source is not None and "sources" not in data:
            data["sources"] = [source]
        custom = dict(data.get("customConditions") or data.get("custom_conditions") or {})
        for name in ("cvss_score", "epss_score"):
            if name in data:
                custom.setdefault(name, data.pop(name))
        if custom:
            data.pop("custom_conditions", None)
            data["customConditions"] = custom
        return data

    @field_validator("confidence_min", mode="before")
    @classmethod
    def normalize_confidence(cls, value: Any) -> Any:
        return None if value is None else _fraction(value)

    @field_validator("custom_conditions")
    @classmethod
    def check_custom(cls, value: Dict[str, Dict[str, float]]) -> Dict[str, Dict[str, float]]:
        for name, predicates in value.items():
            if name not in CUSTOM_FIELDS:
                raise ValueError(f"unknown custom condition field {name!r}")
            if not predicates:
                raise ValueError(f"custom condition {name!r} has no predicates")
            for op in predicates:
                if op not in OPERATORS:
                    raise ValueError(f"unknown operator {op!r} for {name!r}")
        return value

    def matches(self, indicator: Indicator) -> bool:
        if self.sources is not None and indicator.source not in self.sources:
            return False
        if self.indicator_types is not None and indicator.type not in self.indicator_types:
            return False
        if self.confidence_min is not None and indicator.confidence_fraction < self.confidence_min:
            return False
        if self.severity_min is not None and indicator.severity.rank < self.severity_min.rank:
            return False
        if self.tags and not set(self.tags).issubset(indicator.tags):
            return False
        for name, predicates in self.custom_conditions.items():
            actual = _custom_value(indicator, name)
            # a threshold on a value the indicator lacks cannot be met
            if actual is None:
                return False
            for op, threshold in predicates.items():
                if not OPERATORS[op](float(actual), threshold):
                    return False
        return True


def _custom_value(indicator: Indicator, name: str) -> Optional[float]:
    if name == "confidence":
        return indicator.confidence_fraction
    return getattr(indicator.context, name)


class RuleActions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    create_risk: bool = Field(default=True, alias="createRisk")
    auto_promote_to_draft: bool = Field(default=False, alias="autoPromoteToDraft")
    assign_priority: Optional[str] = Field(default=None, alias="assignPriority")

    @field_validator("assign_priority")
    @classmethod
    def check_priority(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.lower()
        if value not in PRIORITIES:
            raise ValueError(f"priority must be one of {', '.join(PRIORITIES)}")
        return value


class RiskCreationRule(BaseModel):
    """One operator-configured rule.

    ``confidence_threshold`` is the confidence floor (0-1) a matching
    rule lends to the resulting risk.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    enabled: bool = True
    confidence_threshold: float = Field(default=0.0, alias="confidenceThreshold", ge=0, le=1)
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    actions: RuleActions = Field(default_factory=RuleActions)

    @field_validator("confidence_threshold", mode="before")
    @classmethod
    def normalize_threshold(cls, value: Any) -> Any:
        return _fraction(value)

    @property
    def label(self) -> str:
        return self.name or self.id

    def matches(self, indicator: Indicator) -> bool:
        return self.enabled and self.conditions.matches(indicator)


# ---------------------------------------------------------------------------
# Assessment
# ---------------------------------------------------------------------------


def estimate_impact(indicator: Indicator) -> int:
    """Impact 1-5 from CVSS, ransomware use and confidence."""
    ctx = indicator.context
    if indicator.type == IndicatorType.CVE and (ctx.cvss_score or 0) >= 9.0:
        return 5
    if ctx.ransomware:
        return 5
    confidence = indicator.confidence_fraction
    if confidence >= 0.9:
        return 4
    if confidence >= 0.7:
        return 3
    return 2


def estimate_probability(indicator: Indicator) -> int:
    """Probability 1-5 from exploitation status, EPSS and confidence."""
    ctx = indicator.context
    if ctx.exploitation_status == "active":
        return 5
    if (ctx.epss_score or 0) >= 0.8:
        return 4
    if indicator.confidence_fraction >= 0.8:
        return 3
    return 2


@dataclass
class RiskAssessment:
    """Rule-engine verdict for one indicator."""

    should_create: bool
    confidence: float
    auto_promote_to_draft: bool = False
    matched_rules: List[str] = field(default_factory=list)
    reasoning: str = ""
    estimated_impact: int = 2
    estimated_probability: int = 2
    priority: Optional[str] = None


class RuleEngine:
    """Evaluates indicators against the enabled risk creation rules."""

    def __init__(
        self,
        rules: Optional[Iterable[Union[RiskCreationRule, Dict[str, Any]]]] = None,
        default_create_threshold: float = DEFAULT_CREATE_THRESHOLD,
    ):
        self.default_create_threshold = default_create_threshold
        self.rules: List[RiskCreationRule] = []
        for rule in rules or []:
            self.add_rule(rule)

    def add_rule(self, rule: Union[RiskCreationRule, Dict[str, Any]]) -> bool:
        """Add a rule; an invalid rule dict is logged and skipped."""
        if not isinstance(rule, RiskCreationRule):
            try:
                rule = RiskCreationRule.model_validate(rule)
            except ValidationError as exc:
                rule_id = rule.get("id", "?") if isinstance(rule, dict) else "?"
                logger.error("Skipping invalid risk rule %s: %s", rule_id, exc)
                return False
        self.rules.append(rule)
        return True

    def matching_rules(self, indicator: Indicator) -> List[RiskCreationRule]:
        matched = []
        for rule in self.rules:
            try:
                if rule.matches(indicator):
                    matched.append(rule)
            except (TypeError, ValueError, KeyError) as exc:
                logger.warning("Rule %s failed on %s: %s", rule.id, indicator.value, exc)
        return matched

    def assess(self, indicator: Indicator) -> RiskAssessment:
        confidence = indicator.confidence_fraction
        matched = self.matching_rules(indicator)

        if matched:
            creating = [rule for rule in matched if rule.actions.create_risk]
            floors = [rule.confidence_threshold for rule in creating]
            assessed = max([confidence] + floors)
            priorities = [r.actions.assign_priority for r in creating if r.actions.assign_priority]
            return RiskAssessment(
                should_create=bool(creating),
                confidence=round(assessed, 4),
                auto_promote_to_draft=any(r.actions.auto_promote_to_draft for r in creating),
                matched_rules=[rule.label for rule in matched],
                reasoning=(
                    f"Matched rules: {', '.join(rule.label for rule in matched)}. "
                    f"Source: {indicator.source}, Type: {indicator.type.value}"
                ),
                estimated_impact=estimate_impact(indicator),
                estimated_probability=estimate_probability(indicator),
                priority=max(priorities, key=PRIORITIES.index) if priorities else None,
            )

        should_create = confidence >= self.default_create_threshold
        return RiskAssessment(
            should_create=should_create,
            confidence=confidence,
            matched_rules=["Default confidence threshold"] if should_create else [],
            reasoning=(
                f"No rules matched; confidence {confidence:.2f} "
                f"{'meets' if should_create else 'is below'} default threshold "
                f"{self.default_create_threshold:.2f}"
            ),
            estimated_impact=estimate_impact(indicator),
            estimated_probability=estimate_probability(indicator),
        )
