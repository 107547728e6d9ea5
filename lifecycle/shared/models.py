"""
lifecycle/shared/models.py
──────────────────────────
The single source of truth for every data structure the control plane
exchanges: configuration, scaling decisions, zone plans, spot requests,
upgrade plans and statuses, hooks and events.

Reading guide
-------------
Read top-to-bottom. Each section builds on the ones above it.

  SECTION 1  enumerations
  SECTION 2  configuration models (what the operator asks for)
  SECTION 3  placement and capacity models (distribution, spot)
  SECTION 4  upgrade models (plan + live status)
  SECTION 5  hook and event models
  SECTION 6  cost models

None of these are persisted. Plans, statuses and distributions are in-memory
value objects handed between components and their collaborators.
"""

from __future__ import annotations

import time
import uuid
from collections import OrderedDict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class ScalingDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    NONE = "none"


class UpgradePhase(str, Enum):
    """
    Lifecycle of one upgrade execution.

    planned → executing → {paused ⇄ executing, paused_on_failure}
            → {completed | rolled_back | stopped | failed}

    rolling_back is transient: entered by rollback(), left for rolled_back.
    failed is the terminal phase of the "propagate" failure policy.
    """
    PLANNED = "planned"
    EXECUTING = "executing"
    PAUSED = "paused"
    PAUSED_ON_FAILURE = "paused_on_failure"
    ROLLING_BACK = "rolling_back"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    STOPPED = "stopped"
    FAILED = "failed"


class NodeUpgradeStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class HookEvent(str, Enum):
    """Named lifecycle events hooks can be attached to."""
    POST_NODE_CREATE = "post_node_create"
    PRE_NODE_DELETE = "pre_node_delete"
    PRE_CLUSTER_DESTROY = "pre_cluster_destroy"
    POST_CLUSTER_READY = "post_cluster_ready"
    PRE_UPGRADE = "pre_upgrade"
    POST_UPGRADE = "post_upgrade"
    BACKUP_COMPLETE = "backup_complete"
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"


class HookType(str, Enum):
    SCRIPT = "script"
    KUBECTL = "kubectl"
    HTTP = "http"


class SpotRejection(str, Enum):
    CAPACITY_UNAVAILABLE = "capacity_unavailable"
    PRICE_TOO_HIGH = "price_too_high"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: CONFIGURATION MODELS
# ─────────────────────────────────────────────────────────────────────────────

class AutoScalingConfig(BaseModel):
    """
    Per node pool autoscaling settings.

    Zero for target_cpu / target_memory means "use the strategy default"
    (70% CPU, 75% memory). Zero for cooldown_s / scale_down_delay_s means
    "use the engine default" (300s / 600s).
    """
    enabled: bool = Field(False, description="Master switch. Disabled pools never scale.")
    min_nodes: int = Field(1, ge=0, description="Lower bound on pool size")
    max_nodes: int = Field(10, ge=0, description="Upper bound on pool size")
    target_cpu: int = Field(0, ge=0, le=100, description="Target CPU utilisation %, 0 = default")
    target_memory: int = Field(0, ge=0, le=100, description="Target memory utilisation %, 0 = default")
    cooldown_s: int = Field(0, ge=0, description="Minimum seconds between scale-ups")
    scale_down_delay_s: int = Field(0, ge=0, description="Minimum seconds between scale-downs")


class SpotConfig(BaseModel):
    """Spot / preemptible capacity policy for a pool."""
    enabled: bool = Field(True)
    max_spot_price: float = Field(
        0.0, ge=0.0,
        description="Price ceiling in USD/hour. 0.0 = no ceiling."
    )
    fallback_on_demand: bool = Field(
        False,
        description="Whether a spot rejection should be retried as on-demand by the caller"
    )
    spot_percentage: int = Field(
        0, ge=0, le=100,
        description="Share of pool nodes that should be spot. 0 = strategy default."
    )
    interruption_mode: str = Field("terminate", description="Provider interruption behaviour")


class UpgradeConfig(BaseModel):
    """
    Upgrade orchestration settings.

    pause_on_failure and auto_rollback are mutually exclusive failure
    policies. With neither set, the first failure propagates to the caller.
    """
    strategy: str = Field("rolling", description="Upgrade strategy name")
    max_unavailable: int = Field(1, ge=0)
    max_surge: int = Field(1, ge=0)
    drain_timeout_s: int = Field(300, ge=0)
    health_check_interval_s: float = Field(30.0, ge=0.0)
    pause_on_failure: bool = Field(False)
    auto_rollback: bool = Field(False)


class HookAction(BaseModel):
    """
    One side effect to run on a lifecycle event.

    type is optional: when empty the engine infers it from which of
    script / command / url is set.
    """
    type: Optional[HookType] = Field(None, description="Explicit executor type")
    script: str = Field("", description="Script path or inline script body")
    command: str = Field("", description="Command line (kubectl verb or shell)")
    url: str = Field("", description="Webhook URL")
    timeout_s: float = Field(0.0, ge=0.0, description="0 = engine default (60s)")
    retry_count: int = Field(0, ge=0, description="Total attempts, 0 = 1 attempt")
    env: Dict[str, str] = Field(default_factory=dict)


class HooksConfig(BaseModel):
    post_node_create: List[HookAction] = Field(default_factory=list)
    pre_node_delete: List[HookAction] = Field(default_factory=list)
    pre_cluster_destroy: List[HookAction] = Field(default_factory=list)
    post_cluster_ready: List[HookAction] = Field(default_factory=list)
    pre_upgrade: List[HookAction] = Field(default_factory=list)
    post_upgrade: List[HookAction] = Field(default_factory=list)
    backup_complete: List[HookAction] = Field(default_factory=list)
    scale_up: List[HookAction] = Field(default_factory=list)
    scale_down: List[HookAction] = Field(default_factory=list)


class ZoneDistribution(BaseModel):
    """One entry of a pool's explicit zone layout."""
    zone: str
    count: int = Field(0, ge=0)
    region: str = ""


class ControlPlaneConfig(BaseModel):
    """Bundle of every section the control plane reads."""
    autoscaling: AutoScalingConfig = Field(default_factory=AutoScalingConfig)
    spot: SpotConfig = Field(default_factory=SpotConfig)
    upgrade: UpgradeConfig = Field(default_factory=UpgradeConfig)
    hooks: HooksConfig = Field(default_factory=HooksConfig)
    distribution_strategy: str = Field("round_robin")
    scaling_strategy: str = Field("composite")
    spot_strategy: str = Field("default")

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "ControlPlaneConfig":
        """Build from a plain dict (e.g. a loaded YAML/JSON document)."""
        return cls.model_validate(data or {})


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: PLACEMENT AND CAPACITY MODELS
# ─────────────────────────────────────────────────────────────────────────────

class ScalingDecision(BaseModel):
    """
    Outcome of one autoscaling evaluation cycle.

    Always recomputed from live metrics, never persisted.
    """
    direction: ScalingDirection = ScalingDirection.NONE
    node_count: int = Field(0, ge=0)
    reason: str = ""
    strategy: str = ""

    @classmethod
    def none(cls, reason: str, strategy: str = "") -> "ScalingDecision":
        return cls(direction=ScalingDirection.NONE, node_count=0, reason=reason, strategy=strategy)


class ZoneDistributionPlan(BaseModel):
    """
    How total_units are spread over zones.

    Invariant: zone_counts has exactly the input zones as keys, every value
    is ≥ 0, and the values sum to total_units.
    """
    total_units: int = Field(..., ge=0)
    zone_counts: Dict[str, int]
    strategy_name: str

    def zone_percentages(self) -> Dict[str, float]:
        if self.total_units == 0:
            return {zone: 0.0 for zone in self.zone_counts}
        return {
            zone: count * 100.0 / self.total_units
            for zone, count in self.zone_counts.items()
        }


class NodeSpec(BaseModel):
    """What to create: a cloud-neutral node description."""
    name: str
    provider: str
    region: str = ""
    zone: str = ""
    instance_type: str = Field("", description="Provider size / machine type")
    labels: Dict[str, str] = Field(default_factory=dict)
    spot: bool = False


class SpotRequest(BaseModel):
    """One provisioning attempt against a provider. Never mutated after use."""
    model_config = ConfigDict(frozen=True)

    node_spec: NodeSpec
    zone: str
    max_price_per_hour: float = Field(0.0, ge=0.0)
    fallback_allowed: bool = False


class SpotOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    instance_ref: str
    actual_price: float = Field(..., ge=0.0)
    zone: str
    provider: str


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 4: UPGRADE MODELS
# ─────────────────────────────────────────────────────────────────────────────

class NodeRef(BaseModel):
    """Reference to a cluster node as seen by the upgrade orchestrator."""
    name: str
    node_id: str = ""
    zone: str = ""
    version: str = ""


class UpgradeNodePlan(BaseModel):
    """
    One node's slot in an UpgradePlan.

    status is the only field that changes after planning, and only the
    orchestrator executing the plan changes it. replacement is set by
    strategies that swap nodes (blue-green, surge).
    """
    node: NodeRef
    order: int = Field(..., ge=0)
    wave: int = Field(..., ge=0)
    status: NodeUpgradeStatus = NodeUpgradeStatus.PENDING
    replacement: Optional[str] = None

    @property
    def name(self) -> str:
        return self.node.name


class UpgradePlan(BaseModel):
    id: str = Field(default_factory=lambda: f"upgrade-{uuid.uuid4().hex[:12]}")
    current_version: str
    target_version: str
    strategy_name: str
    nodes: List[UpgradeNodePlan] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    estimated_duration_s: int = Field(0, ge=0)

    def waves(self) -> "OrderedDict[int, List[UpgradeNodePlan]]":
        """Node plans grouped by wave, waves ascending, input order kept."""
        grouped: "OrderedDict[int, List[UpgradeNodePlan]]" = OrderedDict()
        for node_plan in sorted(self.nodes, key=lambda n: (n.wave, n.order)):
            grouped.setdefault(node_plan.wave, []).append(node_plan)
        return grouped

    @property
    def total_waves(self) -> int:
        return len({n.wave for n in self.nodes})


class UpgradeStatus(BaseModel):
    """
    Live status of the orchestrator's single in-flight plan.

    Owned by the orchestrator and mutated under its lock. Callers only ever
    receive deep copies from get_status().
    """
    plan_id: str
    phase: UpgradePhase = UpgradePhase.PLANNED
    progress_percent: int = Field(0, ge=0, le=100)
    current_node: str = ""
    completed_nodes: List[str] = Field(default_factory=list)
    failed_nodes: List[str] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    estimated_finish: Optional[datetime] = None
    error: str = ""


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 5: HOOK AND EVENT MODELS
# ─────────────────────────────────────────────────────────────────────────────

class HookRegistration(BaseModel):
    """
    A hook attached to an event.

    sequence records registration order so ties on priority stay stable.
    """
    id: str
    event: HookEvent
    action: HookAction
    priority: int = 0
    sequence: int = 0


class HookResult(BaseModel):
    hook_id: str
    event: HookEvent
    success: bool
    attempts: int = Field(0, ge=0)
    error: str = ""


class Event(BaseModel):
    """An immutable notification broadcast on the event bus."""
    model_config = ConfigDict(frozen=True)

    type: str
    timestamp: float = Field(default_factory=time.time)
    source: str = ""
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, str] = Field(default_factory=dict)


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 6: COST MODELS
# ─────────────────────────────────────────────────────────────────────────────

class NodePoolSpec(BaseModel):
    """A homogeneous group of nodes, used for cost estimation."""
    name: str
    provider: str
    region: str
    instance_type: str
    count: int = Field(1, ge=0)
    roles: List[str] = Field(default_factory=lambda: ["worker"])
    spot: bool = False


class CostEstimate(BaseModel):
    resource: str
    hourly_cost: float = Field(..., ge=0.0)
    monthly_cost: float = Field(..., ge=0.0)
    yearly_cost: float = Field(..., ge=0.0)
    currency: str = "USD"
    is_spot: bool = False
    spot_savings_pct: float = Field(0.0, ge=0.0, le=100.0)
    breakdown: Dict[str, float] = Field(default_factory=dict)


class CostRecommendation(BaseModel):
    type: str = Field(..., description="spot_usage | right_sizing | reserved_instances")
    description: str
    potential_savings: float = Field(0.0, ge=0.0)
    resource: str = ""
    current_config: str = ""
    recommended_config: str = ""


class ClusterCostEstimate(BaseModel):
    total_monthly_cost: float = 0.0
    total_yearly_cost: float = 0.0
    currency: str = "USD"
    node_costs: List[CostEstimate] = Field(default_factory=list)
    load_balancer_cost: float = 0.0
    network_cost: float = 0.0
    spot_savings_pct: float = 0.0
    recommendations: List[CostRecommendation] = Field(default_factory=list)
