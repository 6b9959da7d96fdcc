# ops_engine/rightsizing_manager.py
import math
import logging

from .settings import settings
from .schemas import AutoscalingBounds, ResourceRecommendation, ResourceSpec, UsagePercentiles
from .custom_exceptions import InsufficientDataError
from .timeseries_reader import fetch_usage_percentiles

logger = logging.getLogger(__name__)

REQUIRED_STATS = ['avg_cpu', 'peak_cpu', 'p95_cpu', 'avg_memory', 'peak_memory', 'p95_memory']


def round_up(value: float, step: int) -> int:
    """Rounds a non-negative quantity up to the next multiple of `step`."""
    return int(math.ceil(round(max(value, 0.0) / step, 9)) * step)


def _size(avg_pct: float, p95_pct: float, allocation: int, step: int, unit: str) -> ResourceSpec:
    # Usage percentages are relative to the platform default allocation
    reservation = round_up(avg_pct * allocation / 100, step)
    recommended = max(round_up(p95_pct * allocation / 100, step), reservation, step)
    return ResourceSpec(
        unit=unit,
        current=allocation,
        recommended=recommended,
        reservation=reservation,
        savings_pct=round((allocation - recommended) / allocation * 100, 1),
    )


def build_resource_recommendation(project_id: str, stats: dict, config=None) -> ResourceRecommendation:
    """
    Derives requests, reservations and autoscaling bounds from P95/average usage.
    Raises InsufficientDataError when the usage statistics are missing.
    """
    config = config or settings
    missing = [key for key in REQUIRED_STATS if stats.get(key) is None]
    if missing:
        raise InsufficientDataError(f"No usage samples for project '{project_id}' (missing {', '.join(missing)}).")

    cpu = _size(stats['avg_cpu'], stats['p95_cpu'], config.default_cpu_millicores, config.cpu_step_millicores, "m")
    memory = _size(stats['avg_memory'], stats['p95_memory'], config.default_memory_mib, config.memory_step_mib, "Mi")

    peak_millicores = max(stats['peak_cpu'], 0.0) * config.default_cpu_millicores / 100
    autoscaling = AutoscalingBounds(
        min_replicas=config.min_replicas,
        max_replicas=max(config.min_replicas, math.ceil(round(peak_millicores / config.replica_cpu_millicores, 9))),
        target_cpu_utilization=config.target_cpu_utilization,
        target_memory_utilization=config.target_memory_utilization,
    )

    def _percentiles(kind):
        p99 = stats.get(f'p99_{kind}')
        return UsagePercentiles(
            avg=round(stats[f'avg_{kind}'], 2),
            peak=round(stats[f'peak_{kind}'], 2),
            p95=round(stats[f'p95_{kind}'], 2),
            p99=round(stats[f'peak_{kind}'] if p99 is None else p99, 2),
        )

    return ResourceRecommendation(
        project_id=project_id,
        cpu=cpu,
        memory=memory,
        autoscaling=autoscaling,
        cpu_usage=_percentiles('cpu'),
        memory_usage=_percentiles('memory'),
    )


def get_resource_recommendations(project_id: str, engine=None, config=None) -> ResourceRecommendation:
    """Right-sizes a project's deployments from 30-day usage percentiles."""
    config = config or settings
    stats = fetch_usage_percentiles(project_id, days=config.rightsizing_history_days, engine=engine)
    recommendation = build_resource_recommendation(project_id, stats, config)
    logger.info(f"Right-sized project {project_id}: cpu {recommendation.cpu.recommended}m, "
                f"memory {recommendation.memory.recommended}Mi")
    return recommendation
