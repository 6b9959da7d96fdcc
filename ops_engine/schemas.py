# ops_engine/schemas.py
from pydantic import BaseModel, Field
from typing import List, Dict, Literal
from datetime import datetime

# --- Input Schemas ---
# Row models the readers validate fetched rows against.
class MetricSample(BaseModel):
    """One aggregated bucket. Utilization may exceed 100% during bursts."""
    timestamp: datetime
    deployment_id: str | None = None  # None for project-wide buckets
    avg_cpu_pct: float = Field(ge=0)
    avg_memory_pct: float = Field(ge=0)
    max_cpu_pct: float | None = Field(default=None, ge=0)
    max_memory_pct: float | None = Field(default=None, ge=0)
    avg_latency_ms: float | None = Field(default=None, ge=0)
    latency_stddev_ms: float | None = None
    error_count: int = Field(default=0, ge=0)
    request_count: int = Field(default=0, ge=0)

class UsageRecord(BaseModel):
    team_id: str
    metric_type: Literal["cpu_hours", "bandwidth_gb", "storage_gb", "builds"]
    quantity: float = Field(ge=0)
    billed_at_day: datetime

class BuildRecord(BaseModel):
    id: str
    project_id: str
    status: str
    duration_seconds: float | None = Field(default=None, ge=0)
    artifact_size_mb: float | None = Field(default=None, ge=0)
    cache_hit_rate: float | None = Field(default=None, ge=0, le=1)
    created_at: datetime

# --- Scaling Schemas ---
class ForecastPoint(BaseModel):
    timestamp: datetime
    estimated_cpu_pct: float
    estimated_memory_pct: float
    recommended_replicas: int
    confidence: float

class ScalingSummary(BaseModel):
    avg_cpu_predicted: float
    peak_cpu_predicted: float
    recommended_autoscale_min: int
    recommended_autoscale_max: int

class ScalingForecast(BaseModel):
    project_id: str
    model_backend: str
    generated_at: datetime
    forecast: List[ForecastPoint]
    summary: ScalingSummary

# --- Anomaly Schemas ---
class Anomaly(BaseModel):
    deployment_id: str
    type: Literal["high_cpu", "high_latency", "high_error_rate"]
    severity: Literal["warning", "critical"]
    current: float
    baseline: float
    score: float
    unit: str
    recommendation: str

class AnomalyReport(BaseModel):
    team_id: str
    anomalies: List[Anomaly]
    timestamp: datetime

# --- Cost Schemas ---
class MetricCostForecast(BaseModel):
    daily_average: float
    trend_direction: Literal["increasing", "decreasing", "flat"]
    slope: float
    intercept: float
    projected_monthly_usage: float
    unit_rate: float
    projected_cost: float

class CostRecommendation(BaseModel):
    action: str
    description: str
    savings_pct: float
    savings_potential: float
    # Savings percentages are heuristic estimates, never measured.
    heuristic: bool = True

class CostSummary(BaseModel):
    previous_month_cost: float
    projected_cost: float
    cost_change_pct: float | None = None
    cost_change_label: str
    recommendations: List[CostRecommendation]

class CostForecast(BaseModel):
    team_id: str
    forecast: Dict[str, MetricCostForecast]
    excluded_metrics: List[str] = []
    summary: CostSummary

# --- Build Schemas ---
class BuildRecommendation(BaseModel):
    priority: Literal["high", "medium", "low"]
    title: str
    description: str
    estimated_saving: float
    saving_unit: str
    action: str

class BuildAnalysis(BaseModel):
    project_id: str
    total_builds: int
    success_rate: float
    avg_build_time: float
    avg_cache_hit_rate: float
    avg_artifact_size_mb: float
    recommendations: List[BuildRecommendation]
    estimated_time_saving: float
    analyzed_at: datetime

# --- Right-sizing Schemas ---
class ResourceSpec(BaseModel):
    unit: str
    current: int
    recommended: int
    reservation: int
    savings_pct: float

class AutoscalingBounds(BaseModel):
    min_replicas: int
    max_replicas: int
    target_cpu_utilization: int
    target_memory_utilization: int

class UsagePercentiles(BaseModel):
    avg: float
    peak: float
    p95: float
    p99: float

class ResourceRecommendation(BaseModel):
    project_id: str
    cpu: ResourceSpec
    memory: ResourceSpec
    autoscaling: AutoscalingBounds
    cpu_usage: UsagePercentiles
    memory_usage: UsagePercentiles
