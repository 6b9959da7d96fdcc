# ops_engine/cost_manager.py
import logging
from datetime import datetime

import pandas as pd

from .settings import settings
from .schemas import CostForecast, CostRecommendation, CostSummary, MetricCostForecast
from .trend import fit_trend
from .custom_exceptions import InsufficientDataError
from .timeseries_reader import fetch_daily_usage, fetch_previous_month_cost, require_min_rows

# Set up a logger for this module
logger = logging.getLogger(__name__)


def _trend_direction(slope: float) -> str:
    if slope > 0:
        return "increasing"
    if slope < 0:
        return "decreasing"
    return "flat"


def forecast_metric(daily: pd.DataFrame, rate: float, config=None) -> MetricCostForecast:
    """Fits a trend over one metric type's daily quantities and prices the projection."""
    config = config or settings
    quantities = daily.sort_values('day')['total_qty'].astype(float)
    trend = fit_trend(quantities.to_list())
    projected_usage = max(trend.slope * config.cost_projection_days + trend.intercept, 0.0)
    return MetricCostForecast(
        daily_average=round(float(quantities.tail(config.cost_run_rate_days).mean()), 2),
        trend_direction=_trend_direction(trend.slope),
        slope=round(trend.slope, 4),
        intercept=round(trend.intercept, 4),
        projected_monthly_usage=round(projected_usage, 2),
        unit_rate=rate,
        projected_cost=round(projected_usage * rate, 2),
    )


def cost_change(projected_cost: float, previous_cost: float) -> tuple[float | None, str]:
    """Percent change against the previous month; a zero previous month is reported as 'new'."""
    if previous_cost == 0:
        return None, "new"
    change_pct = round((projected_cost - previous_cost) / previous_cost * 100, 1)
    return change_pct, f"{change_pct:+.1f}%"


def build_recommendations(forecast: dict, total_projected_cost: float, config=None) -> list:
    """
    Fixed-rule savings suggestions. The savings percentages are heuristic
    estimates from configuration, not measured outcomes.
    """
    config = config or settings
    recommendations = []

    def _recommend(action, description, pct):
        recommendations.append(CostRecommendation(
            action=action,
            description=description,
            savings_pct=pct,
            savings_potential=round(total_projected_cost * pct / 100, 2),
        ))

    bandwidth = forecast.get("bandwidth_gb")
    if bandwidth and bandwidth.daily_average > config.bandwidth_daily_threshold_gb:
        _recommend(
            "Enable CDN caching",
            f"Bandwidth averages {bandwidth.daily_average} GB/day. Serving static assets from the CDN cuts origin egress.",
            config.cdn_savings_pct,
        )

    builds = forecast.get("builds")
    if builds and builds.daily_average > config.builds_daily_threshold:
        _recommend(
            "Optimize build cache",
            f"Builds average {builds.daily_average} per day. Reusing cached layers shortens billable build time.",
            config.build_cache_savings_pct,
        )

    if total_projected_cost > config.reserved_capacity_threshold:
        _recommend(
            "Purchase reserved capacity",
            f"Projected spend of {round(total_projected_cost, 2)} is high enough for committed-use pricing.",
            config.reserved_capacity_savings_pct,
        )

    return recommendations


def build_cost_forecast(team_id: str, usage: pd.DataFrame, previous_month_cost: float, config=None) -> CostForecast:
    """
    Projects next-period usage and spend per metric type from daily usage rows.
    Raises InsufficientDataError with fewer than `cost_min_usage_rows` rows.
    """
    config = config or settings
    require_min_rows(usage, config.cost_min_usage_rows, "usage records")

    forecast = {}
    excluded = []
    for metric_type, daily in usage.groupby('metric_type'):
        rate = config.cost_rates.get(metric_type)
        if rate is None:
            logger.warning(f"No unit rate configured for metric '{metric_type}'; excluding it from the forecast.")
            excluded.append(metric_type)
            continue
        try:
            forecast[metric_type] = forecast_metric(daily, rate, config)
        except InsufficientDataError as e:
            logger.warning(f"Excluding metric '{metric_type}' from the cost forecast for team {team_id}: {e}")
            excluded.append(metric_type)

    total_projected_cost = sum(f.projected_cost for f in forecast.values())
    change_pct, change_label = cost_change(total_projected_cost, previous_month_cost)

    summary = CostSummary(
        previous_month_cost=round(previous_month_cost, 2),
        projected_cost=round(total_projected_cost, 2),
        cost_change_pct=change_pct,
        cost_change_label=change_label,
        recommendations=build_recommendations(forecast, total_projected_cost, config),
    )
    return CostForecast(team_id=team_id, forecast=forecast, excluded_metrics=excluded, summary=summary)


def forecast_costs(team_id: str, engine=None, config=None, now: datetime | None = None) -> CostForecast:
    """Reads 90 days of usage and last month's invoices, then builds the cost forecast."""
    config = config or settings
    usage = fetch_daily_usage(
        team_id, days=config.cost_history_days, min_rows=config.cost_min_usage_rows, engine=engine
    )
    previous_cost = fetch_previous_month_cost(team_id, now=now, engine=engine)
    return build_cost_forecast(team_id, usage, previous_cost, config)
