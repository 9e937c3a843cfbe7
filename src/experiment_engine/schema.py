"""
Experiment data models for the experimentation engine.

Dataclass schemas for experiment definitions, variants and their typed
configuration payloads, sticky assignments, behavioural events, live
aggregate counters, bandit arm state and analysis results.
"""

import math
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Deque, Dict, List, Optional, Set, Type, Union

from .errors import ValidationError

TRAFFIC_TOLERANCE = 0.1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _as_utc(value: datetime) -> datetime:
    # naive timestamps are treated as UTC
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class ExperimentStatus(str, Enum):
    """Experiment lifecycle status."""
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class EventType(str, Enum):
    """Behavioural event type."""
    EXPOSURE = "exposure"
    CONVERSION = "conversion"
    PURCHASE = "purchase"
    CUSTOM = "custom"
    GOAL = "goal"


class TargetingOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"
    NOT_IN = "not_in"


class ConditionType(str, Enum):
    """Which property bag a targeting rule reads from."""
    USER_PROPERTY = "user_property"
    SESSION_PROPERTY = "session_property"
    CUSTOM_EVENT = "custom_event"
    GEOGRAPHIC = "geographic"
    DEVICE = "device"


class CorrectionMethod(str, Enum):
    """Multiple-comparisons correction."""
    NONE = "none"
    BONFERRONI = "bonferroni"
    BENJAMINI_HOCHBERG = "benjamini_hochberg"


class SequentialDecision(str, Enum):
    CONTINUE = "continue"
    STOP_FOR_EFFICACY = "stop_for_efficacy"
    STOP_FOR_FUTILITY = "stop_for_futility"


class RecommendationType(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"
    EXTEND = "extend"
    WINNER = "winner"
    INCONCLUSIVE = "inconclusive"


class VariantConfigType(str, Enum):
    CODE_CHANGE = "code_change"
    FEATURE_FLAG = "feature_flag"
    UI_COMPONENT = "ui_component"
    EMAIL_TEMPLATE = "email_template"
    PRICING = "pricing"


# ---------------------------------------------------------------------------
# Variant configuration payloads (tagged by ``type``)
# ---------------------------------------------------------------------------

@dataclass
class _VariantConfigBase:
    config_type: ClassVar[VariantConfigType]

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.config_type.value, **asdict(self)}


@dataclass
class CodeChangeConfig(_VariantConfigBase):
    config_type: ClassVar[VariantConfigType] = VariantConfigType.CODE_CHANGE
    changes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FeatureFlagConfig(_VariantConfigBase):
    config_type: ClassVar[VariantConfigType] = VariantConfigType.FEATURE_FLAG
    flags: Dict[str, bool] = field(default_factory=dict)


@dataclass
class UIComponentConfig(_VariantConfigBase):
    config_type: ClassVar[VariantConfigType] = VariantConfigType.UI_COMPONENT
    component: str = ""
    overrides: Dict[str, Any] = field(default_factory=dict)


@dataclass
class EmailTemplateConfig(_VariantConfigBase):
    config_type: ClassVar[VariantConfigType] = VariantConfigType.EMAIL_TEMPLATE
    template_id: str = ""
    subject_line: Optional[str] = None
    sender_name: Optional[str] = None


@dataclass
class PricingConfig(_VariantConfigBase):
    config_type: ClassVar[VariantConfigType] = VariantConfigType.PRICING
    product_id: Optional[str] = None
    discount_percentage: Optional[float] = None
    discount_amount: Optional[float] = None
    price_override: Optional[float] = None


VariantConfig = Union[
    CodeChangeConfig,
    FeatureFlagConfig,
    UIComponentConfig,
    EmailTemplateConfig,
    PricingConfig,
]

_VARIANT_CONFIG_TYPES: Dict[str, Type[_VariantConfigBase]] = {
    cls.config_type.value: cls
    for cls in (
        CodeChangeConfig,
        FeatureFlagConfig,
        UIComponentConfig,
        EmailTemplateConfig,
        PricingConfig,
    )
}


def variant_config_from_dict(data: Optional[Dict[str, Any]]) -> Optional[VariantConfig]:
    """Build the typed payload selected by ``data["type"]``."""
    if data is None:
        return None
    payload = dict(data)
    config_type = payload.pop("type", None)
    cls = _VARIANT_CONFIG_TYPES.get(str(config_type))
    if cls is None:
        raise ValidationError(
            f"Unknown variant config type '{config_type}'. "
            f"Expected one of {', '.join(sorted(_VARIANT_CONFIG_TYPES))}"
        )
    try:
        return cls(**payload)
    except TypeError as e:
        raise ValidationError(f"Invalid {config_type} config: {e}") from e


# ---------------------------------------------------------------------------
# Experiment definition
# ---------------------------------------------------------------------------

@dataclass
class TargetingRule:
    """Eligibility rule evaluated against user or session properties."""
    field: str
    operator: TargetingOperator
    value: Any = None
    inclusion: bool = True  # False inverts the match
    condition_type: ConditionType = ConditionType.USER_PROPERTY
    name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "operator": self.operator.value,
            "value": self.value,
            "inclusion": self.inclusion,
            "condition_type": self.condition_type.value,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TargetingRule":
        return cls(
            field=data["field"],
            operator=TargetingOperator(data["operator"]),
            value=data.get("value"),
            inclusion=data.get("inclusion", True),
            condition_type=ConditionType(data.get("condition_type", "user_property")),
            name=data.get("name", ""),
        )


@dataclass
class StatisticalConfig:
    """Statistical settings for an experiment."""
    confidence_level: float = 0.95
    power: float = 0.8
    minimum_detectable_effect: float = 0.05  # relative lift, 0.05 = +5%
    minimum_sample_size: int = 1000  # per arm
    sequential_testing: bool = False
    bayesian_analysis: bool = False
    multiple_comparisons_correction: CorrectionMethod = CorrectionMethod.BENJAMINI_HOCHBERG

    @property
    def alpha(self) -> float:
        return 1 - self.confidence_level

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["multiple_comparisons_correction"] = self.multiple_comparisons_correction.value
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatisticalConfig":
        d = dict(data)
        if "multiple_comparisons_correction" in d:
            d["multiple_comparisons_correction"] = CorrectionMethod(
                d["multiple_comparisons_correction"]
            )
        return cls(**d)


@dataclass
class BanditConfig:
    """Enables bandit-driven traffic reallocation for a running experiment."""
    algorithm: str = "thompson_sampling"
    epsilon: float = 0.10
    min_allocation: float = 1.0  # percent floor per arm

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Variant:
    """One arm of an experiment."""
    variant_id: str
    name: str = ""
    traffic_percentage: float = 0.0
    is_control: bool = False
    config: Optional[VariantConfig] = None
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "name": self.name,
            "traffic_percentage": self.traffic_percentage,
            "is_control": self.is_control,
            "config": self.config.to_dict() if self.config else None,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Variant":
        return cls(
            variant_id=data["variant_id"],
            name=data.get("name", ""),
            traffic_percentage=float(data.get("traffic_percentage", 0.0)),
            is_control=bool(data.get("is_control", False)),
            config=variant_config_from_dict(data.get("config")),
            description=data.get("description", ""),
        )


@dataclass
class Experiment:
    """An A/B (or A/B/n) experiment definition and its lifecycle state."""
    experiment_id: str
    name: str
    variants: List[Variant] = field(default_factory=list)
    status: ExperimentStatus = ExperimentStatus.DRAFT
    traffic_allocation: float = 100.0  # share of eligible users admitted, 0-100
    targeting_rules: List[TargetingRule] = field(default_factory=list)
    statistical_config: StatisticalConfig = field(default_factory=StatisticalConfig)
    bandit: Optional[BanditConfig] = None
    description: str = ""
    hypothesis: str = ""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    results: Optional[Dict[str, Any]] = None
    stop_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def control(self) -> Variant:
        controls = [v for v in self.variants if v.is_control]
        if len(controls) != 1:
            raise ValidationError(
                f"Experiment {self.experiment_id} must have exactly one control variant"
            )
        return controls[0]

    @property
    def treatments(self) -> List[Variant]:
        return [v for v in self.variants if not v.is_control]

    @property
    def is_terminal(self) -> bool:
        return self.status in (ExperimentStatus.COMPLETED, ExperimentStatus.ARCHIVED)

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        for v in self.variants:
            if v.variant_id == variant_id:
                return v
        return None

    def traffic_split(self) -> Dict[str, float]:
        return {v.variant_id: v.traffic_percentage for v in self.variants}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "name": self.name,
            "description": self.description,
            "hypothesis": self.hypothesis,
            "status": self.status.value,
            "traffic_allocation": self.traffic_allocation,
            "variants": [v.to_dict() for v in self.variants],
            "targeting_rules": [r.to_dict() for r in self.targeting_rules],
            "statistical_config": self.statistical_config.to_dict(),
            "bandit": self.bandit.to_dict() if self.bandit else None,
            "start_date": _isoformat(self.start_date),
            "end_date": _isoformat(self.end_date),
            "results": self.results,
            "stop_reason": self.stop_reason,
            "created_at": _isoformat(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Experiment":
        bandit = data.get("bandit")
        return cls(
            experiment_id=data["experiment_id"],
            name=data.get("name", data["experiment_id"]),
            description=data.get("description", ""),
            hypothesis=data.get("hypothesis", ""),
            status=ExperimentStatus(data.get("status", "draft")),
            traffic_allocation=float(data.get("traffic_allocation", 100.0)),
            variants=[Variant.from_dict(v) for v in data.get("variants", [])],
            targeting_rules=[
                TargetingRule.from_dict(r) for r in data.get("targeting_rules", [])
            ],
            statistical_config=StatisticalConfig.from_dict(
                data.get("statistical_config", {})
            ),
            bandit=BanditConfig(**bandit) if bandit else None,
            start_date=_parse_datetime(data.get("start_date")),
            end_date=_parse_datetime(data.get("end_date")),
            results=data.get("results"),
            stop_reason=data.get("stop_reason"),
            created_at=_parse_datetime(data.get("created_at")) or utcnow(),
        )


# ---------------------------------------------------------------------------
# Assignment and events
# ---------------------------------------------------------------------------

@dataclass
class Assignment:
    """Sticky bucket record for a single user."""
    experiment_id: str
    user_id: str
    variant_id: str
    assigned_at: datetime = field(default_factory=utcnow)
    user_properties: Dict[str, Any] = field(default_factory=dict)
    session_properties: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "user_id": self.user_id,
            "variant_id": self.variant_id,
            "assigned_at": self.assigned_at.isoformat(),
            "user_properties": self.user_properties,
            "session_properties": self.session_properties,
        }


@dataclass
class Event:
    """Append-only behavioural fact recorded against an experiment arm."""
    experiment_id: str
    variant_id: str
    user_id: str
    event_type: EventType
    event_name: str = ""
    session_id: str = "unknown"
    value: Optional[float] = None  # revenue for purchases
    timestamp: datetime = field(default_factory=utcnow)
    properties: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "experiment_id": self.experiment_id,
            "variant_id": self.variant_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "event_type": self.event_type.value,
            "event_name": self.event_name,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
            "properties": self.properties,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        value = data.get("value")
        return cls(
            event_id=str(data.get("event_id") or uuid.uuid4().hex),
            experiment_id=str(data["experiment_id"]),
            variant_id=str(data["variant_id"]),
            user_id=str(data["user_id"]),
            session_id=str(data.get("session_id") or "unknown"),
            event_type=EventType(data["event_type"]),
            event_name=str(data.get("event_name") or ""),
            value=None if value is None else float(value),
            timestamp=_parse_datetime(data.get("timestamp")) or utcnow(),
            properties=dict(data.get("properties") or {}),
        )


# ---------------------------------------------------------------------------
# Aggregates and bandit state
# ---------------------------------------------------------------------------

@dataclass
class GoalMetrics:
    """Per-goal conversion counters for one experiment arm."""
    goal_id: str
    variant_id: str
    goal_name: str = ""
    total_events: int = 0
    total_value: float = 0.0
    first_conversion_time: Optional[datetime] = None
    last_conversion_time: Optional[datetime] = None
    users: Set[str] = field(default_factory=set, repr=False, compare=False)

    @property
    def unique_users(self) -> int:
        return len(self.users)

    @property
    def average_value(self) -> float:
        return self.total_value / self.total_events if self.total_events > 0 else 0.0

    def record(self, event: "Event") -> None:
        self.total_events += 1
        if event.value is not None:
            self.total_value += float(event.value)
        self.users.add(event.user_id)
        if not self.goal_name:
            self.goal_name = event.event_name
        at = _as_utc(event.timestamp)
        # min/max so out-of-order arrival gives the same window
        if self.first_conversion_time is None or at < self.first_conversion_time:
            self.first_conversion_time = at
        if self.last_conversion_time is None or at > self.last_conversion_time:
            self.last_conversion_time = at

    def to_dict(self, include_users: bool = False) -> Dict[str, Any]:
        d = {
            "goal_id": self.goal_id,
            "variant_id": self.variant_id,
            "goal_name": self.goal_name,
            "total_events": self.total_events,
            "unique_users": self.unique_users,
            "total_value": self.total_value,
            "average_value": self.average_value,
            "first_conversion_time": _isoformat(self.first_conversion_time),
            "last_conversion_time": _isoformat(self.last_conversion_time),
        }
        if include_users:
            d["users"] = sorted(self.users)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GoalMetrics":
        return cls(
            goal_id=data["goal_id"],
            variant_id=data["variant_id"],
            goal_name=data.get("goal_name", ""),
            total_events=int(data.get("total_events", 0)),
            total_value=float(data.get("total_value", 0.0)),
            first_conversion_time=_parse_datetime(data.get("first_conversion_time")),
            last_conversion_time=_parse_datetime(data.get("last_conversion_time")),
            users=set(data.get("users", [])),
        )


@dataclass
class AggregateMetrics:
    """
    Live counters for one experiment arm.

    ``goals`` holds per-goal counters keyed by ``properties["goal_id"]``
    (``"primary"`` when absent). ``event_ids`` are the ids already folded in;
    they travel with snapshots so a cold start keeps deduplicating.
    """
    experiment_id: str
    variant_id: str
    participants: int = 0  # distinct exposed users
    conversions: int = 0  # distinct converting users
    revenue_total: float = 0.0
    event_counts: Dict[str, int] = field(default_factory=dict)
    goals: Dict[str, GoalMetrics] = field(default_factory=dict)
    exposed_users: Set[str] = field(default_factory=set, repr=False, compare=False)
    converted_users: Set[str] = field(default_factory=set, repr=False, compare=False)
    event_ids: Set[str] = field(default_factory=set, repr=False, compare=False)

    @property
    def conversion_rate(self) -> float:
        return self.conversions / self.participants if self.participants > 0 else 0.0

    @property
    def average_revenue_per_user(self) -> float:
        return self.revenue_total / self.participants if self.participants > 0 else 0.0

    def goal_conversion_rate(self, goal_id: str) -> float:
        goal = self.goals.get(goal_id)
        if goal is None or self.participants == 0:
            return 0.0
        return goal.unique_users / self.participants

    def to_dict(self, include_users: bool = False) -> Dict[str, Any]:
        """
        Args:
            include_users: Also emit user and event id sets (snapshots, copies)
        """
        d = {
            "experiment_id": self.experiment_id,
            "variant_id": self.variant_id,
            "participants": self.participants,
            "conversions": self.conversions,
            "conversion_rate": self.conversion_rate,
            "revenue_total": self.revenue_total,
            "average_revenue_per_user": self.average_revenue_per_user,
            "event_counts": dict(self.event_counts),
            "goals": {gid: g.to_dict(include_users) for gid, g in self.goals.items()},
        }
        if include_users:
            d["exposed_users"] = sorted(self.exposed_users)
            d["converted_users"] = sorted(self.converted_users)
            d["event_ids"] = sorted(self.event_ids)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AggregateMetrics":
        return cls(
            experiment_id=data["experiment_id"],
            variant_id=data["variant_id"],
            participants=int(data.get("participants", 0)),
            conversions=int(data.get("conversions", 0)),
            revenue_total=float(data.get("revenue_total", 0.0)),
            event_counts=dict(data.get("event_counts", {})),
            goals={
                gid: GoalMetrics.from_dict(g) for gid, g in data.get("goals", {}).items()
            },
            exposed_users=set(data.get("exposed_users", [])),
            converted_users=set(data.get("converted_users", [])),
            event_ids=set(data.get("event_ids", [])),
        )


@dataclass
class BanditArmState:
    """Reward bookkeeping for one bandit arm."""
    variant_id: str
    pulls: int = 0
    cumulative_reward: float = 0.0
    reward_history: Deque[float] = field(default_factory=lambda: deque(maxlen=1000))

    @property
    def mean_reward(self) -> float:
        return self.cumulative_reward / self.pulls if self.pulls > 0 else 0.0

    @property
    def windowed_mean_reward(self) -> float:
        if not self.reward_history:
            return 0.0
        return sum(self.reward_history) / len(self.reward_history)

    def confidence_radius(self, total_pulls: int) -> float:
        """UCB1 exploration bonus; infinite for an arm never pulled."""
        if self.pulls == 0:
            return math.inf
        return math.sqrt(2 * math.log(max(total_pulls, 1)) / self.pulls)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "pulls": self.pulls,
            "cumulative_reward": self.cumulative_reward,
            "mean_reward": self.mean_reward,
            "window_size": len(self.reward_history),
        }


# ---------------------------------------------------------------------------
# Analysis results
# ---------------------------------------------------------------------------

@dataclass
class ConfidenceInterval:
    lower: float
    upper: float
    confidence_level: float = 0.95

    def to_dict(self) -> Dict[str, float]:
        return {
            "lower": self.lower,
            "upper": self.upper,
            "confidence_level": self.confidence_level,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfidenceInterval":
        return cls(float(data["lower"]), float(data["upper"]), float(data.get("confidence_level", 0.95)))


@dataclass
class AnalysisResult:
    """Treatment vs control comparison for one treatment arm."""
    experiment_id: str
    variant_id: str
    control_variant_id: str
    control_rate: float
    treatment_rate: float
    control_participants: int
    treatment_participants: int
    p_value: float
    z_score: float
    confidence_interval: ConfidenceInterval  # treatment conversion rate
    difference_interval: ConfidenceInterval  # treatment minus control
    effect_size: float  # Cohen's h
    lift: float  # percent relative to control
    is_significant: bool
    practical_significance: bool
    adjusted_p_value: Optional[float] = None
    metric: str = "conversion_rate"
    probability_to_beat_control: Optional[float] = None
    credible_interval: Optional[ConfidenceInterval] = None
    sequential_decision: Optional[SequentialDecision] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "variant_id": self.variant_id,
            "control_variant_id": self.control_variant_id,
            "metric": self.metric,
            "control_rate": self.control_rate,
            "treatment_rate": self.treatment_rate,
            "control_participants": self.control_participants,
            "treatment_participants": self.treatment_participants,
            "p_value": self.p_value,
            "adjusted_p_value": self.adjusted_p_value,
            "z_score": self.z_score,
            "confidence_interval": self.confidence_interval.to_dict(),
            "difference_interval": self.difference_interval.to_dict(),
            "effect_size": self.effect_size,
            "lift": self.lift,
            "is_significant": self.is_significant,
            "practical_significance": self.practical_significance,
            "probability_to_beat_control": self.probability_to_beat_control,
            "credible_interval": (
                self.credible_interval.to_dict() if self.credible_interval else None
            ),
            "sequential_decision": (
                self.sequential_decision.value if self.sequential_decision else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisResult":
        credible = data.get("credible_interval")
        decision = data.get("sequential_decision")
        return cls(
            experiment_id=data["experiment_id"],
            variant_id=data["variant_id"],
            control_variant_id=data["control_variant_id"],
            control_rate=data["control_rate"],
            treatment_rate=data["treatment_rate"],
            control_participants=data["control_participants"],
            treatment_participants=data["treatment_participants"],
            p_value=data["p_value"],
            z_score=data["z_score"],
            confidence_interval=ConfidenceInterval.from_dict(data["confidence_interval"]),
            difference_interval=ConfidenceInterval.from_dict(data["difference_interval"]),
            effect_size=data["effect_size"],
            lift=data["lift"],
            is_significant=data["is_significant"],
            practical_significance=data["practical_significance"],
            adjusted_p_value=data.get("adjusted_p_value"),
            metric=data.get("metric", "conversion_rate"),
            probability_to_beat_control=data.get("probability_to_beat_control"),
            credible_interval=ConfidenceInterval.from_dict(credible) if credible else None,
            sequential_decision=SequentialDecision(decision) if decision else None,
        )


@dataclass
class Recommendation:
    type: RecommendationType
    reason: str
    confidence: float
    suggested_action: str = ""
    impact_estimate: float = 0.0
    variant_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "reason": self.reason,
            "confidence": self.confidence,
            "suggested_action": self.suggested_action,
            "impact_estimate": self.impact_estimate,
            "variant_id": self.variant_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Recommendation":
        d = dict(data)
        d["type"] = RecommendationType(d["type"])
        return cls(**d)


@dataclass
class SampleSizeAnalysis:
    current_sample_size: int  # smallest arm
    required_sample_size: int  # per arm
    sample_size_reached: bool
    power_achieved: float  # power against the configured MDE
    observed_power: float  # power against the observed effect
    mde_achieved: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SampleSizeAnalysis":
        return cls(**data)


@dataclass
class ExperimentAnalysis:
    """Complete experiment analysis."""
    experiment_id: str
    analysis_type: str = "frequentist"  # or bayesian
    results: List[AnalysisResult] = field(default_factory=list)
    recommendations: List[Recommendation] = field(default_factory=list)
    sample_size_analysis: Optional[SampleSizeAnalysis] = None
    variant_metrics: List[AggregateMetrics] = field(default_factory=list)
    srm_passed: bool = True
    srm_p_value: Optional[float] = None
    generated_at: datetime = field(default_factory=utcnow)

    @property
    def winner(self) -> Optional[str]:
        for rec in self.recommendations:
            if rec.type == RecommendationType.WINNER:
                return rec.variant_id
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "experiment_id": self.experiment_id,
            "analysis_type": self.analysis_type,
            "generated_at": self.generated_at.isoformat(),
            "srm_passed": self.srm_passed,
            "srm_p_value": self.srm_p_value,
            "results": [r.to_dict() for r in self.results],
            "recommendations": [r.to_dict() for r in self.recommendations],
            "sample_size_analysis": (
                self.sample_size_analysis.to_dict() if self.sample_size_analysis else None
            ),
            "variant_metrics": [m.to_dict() for m in self.variant_metrics],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExperimentAnalysis":
        sample = data.get("sample_size_analysis")
        return cls(
            experiment_id=data["experiment_id"],
            analysis_type=data.get("analysis_type", "frequentist"),
            results=[AnalysisResult.from_dict(r) for r in data.get("results", [])],
            recommendations=[
                Recommendation.from_dict(r) for r in data.get("recommendations", [])
            ],
            sample_size_analysis=SampleSizeAnalysis.from_dict(sample) if sample else None,
            variant_metrics=[
                AggregateMetrics.from_dict(m) for m in data.get("variant_metrics", [])
            ],
            srm_passed=data.get("srm_passed", True),
            srm_p_value=data.get("srm_p_value"),
            generated_at=_parse_datetime(data.get("generated_at")) or utcnow(),
        )
