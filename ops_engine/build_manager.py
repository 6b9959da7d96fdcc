# ops_engine/build_manager.py
import logging
from datetime import datetime

import pandas as pd

from .settings import settings
from .schemas import BuildAnalysis, BuildRecommendation
from .timeseries_reader import fetch_recent_builds, require_min_rows, save_build_analysis

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = {"success", "succeeded", "ready"}


def build_analysis(project_id: str, builds: pd.DataFrame, config=None) -> BuildAnalysis:
    """
    Summarizes recent builds and emits prioritized recommendations.
    Estimated savings are heuristic percentages from configuration.
    """
    config = config or settings
    require_min_rows(builds, 1, "build records")

    avg_build_time = round(float(builds['duration_seconds'].fillna(0).astype(float).mean()))
    avg_cache_hit_rate = round(float(builds['cache_hit_rate'].fillna(0).astype(float).mean()) * 100, 1)
    avg_artifact_size = float(builds['artifact_size_mb'].fillna(0).astype(float).mean())
    success_rate = round(float(builds['status'].astype(str).str.lower().isin(SUCCESS_STATUSES).mean()) * 100, 1)

    recommendations = []
    estimated_time_saving = 0

    if avg_cache_hit_rate < config.cache_hit_rate_threshold_pct:
        saving = round(avg_build_time * config.layer_caching_saving_pct / 100)
        recommendations.append(BuildRecommendation(
            priority="high",
            title="Improve Docker Layer Caching",
            description=f"Your builds have <{config.cache_hit_rate_threshold_pct:g}% cache hit rate. "
                        "Reorder Dockerfile to put stable layers first.",
            estimated_saving=saving,
            saving_unit="seconds",
            action="Restructure Dockerfile: dependencies -> code -> tests",
        ))
        estimated_time_saving += saving

    # Static best-practice suggestion, not conditioned on the data
    saving = round(avg_build_time * config.parallel_build_saving_pct / 100)
    recommendations.append(BuildRecommendation(
        priority="medium",
        title="Enable Parallel Build Stages",
        description="Use Docker BuildKit with multi-stage builds for parallel compilation.",
        estimated_saving=saving,
        saving_unit="seconds",
        action="Enable BuildKit: DOCKER_BUILDKIT=1 docker build .",
    ))
    estimated_time_saving += saving

    if avg_artifact_size > config.artifact_size_threshold_mb:
        recommendations.append(BuildRecommendation(
            priority="medium",
            title="Reduce Docker Image Size",
            description=f"Your images average {avg_artifact_size / 1024:.1f}GB. Use multi-stage builds and a slim base image.",
            estimated_saving=round((avg_artifact_size - config.artifact_target_size_mb) / 1024, 2),
            saving_unit="GB",
            action="Switch to an alpine or distroless base image",
        ))

    return BuildAnalysis(
        project_id=project_id,
        total_builds=len(builds),
        success_rate=success_rate,
        avg_build_time=avg_build_time,
        avg_cache_hit_rate=avg_cache_hit_rate,
        avg_artifact_size_mb=round(avg_artifact_size, 2),
        recommendations=recommendations,
        estimated_time_saving=estimated_time_saving,
        analyzed_at=datetime.utcnow(),
    )


def analyze_build_optimization(project_id: str, last_n: int | None = None, engine=None, config=None) -> BuildAnalysis:
    """Analyzes the last N builds of a project and persists the snapshot."""
    config = config or settings
    last_n = last_n or config.build_history_limit
    builds = fetch_recent_builds(project_id, limit=last_n, min_rows=1, engine=engine)
    analysis = build_analysis(project_id, builds, config)
    save_build_analysis(project_id, analysis.model_dump_json(), engine=engine)
    logger.info(f"Analyzed {analysis.total_builds} builds for project {project_id}: "
                f"{len(analysis.recommendations)} recommendations")
    return analysis
