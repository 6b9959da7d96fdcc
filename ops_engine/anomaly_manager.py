# ops_engine/anomaly_manager.py
import logging
from datetime import datetime, timedelta
from typing import List

import pandas as pd

from .settings import settings
from .schemas import Anomaly, AnomalyReport
from .cache_utils import cache_result
from .alerting import notify_critical_anomalies
from .timeseries_reader import fetch_deployment_stats

# Set up a logger for this module
logger = logging.getLogger(__name__)

REMEDIATIONS = {
    "high_cpu": "Scale horizontally or increase resource limits",
    "high_latency": "Check database performance or add caching",
    "high_error_rate": "Trigger immediate rollback",
}


def _value(row, key: str, default: float = 0.0) -> float:
    value = row.get(key)
    if value is None or pd.isna(value):
        return default
    return float(value)


def _error_rate(row) -> float:
    requests_seen = _value(row, 'request_count')
    if requests_seen <= 0:
        return 0.0
    return _value(row, 'error_count') / requests_seen


def compute_scores(recent, baseline, config=None) -> dict:
    """
    Deviation scores of a deployment's recent window against its own baseline.
    `recent` and `baseline` are mappings with the columns of fetch_deployment_stats.
    """
    config = config or settings
    baseline_cpu = _value(baseline, 'cpu')
    cpu_score = (_value(recent, 'cpu') - baseline_cpu) / max(baseline_cpu * config.cpu_baseline_fraction,
                                                              config.cpu_min_denominator)

    latency_stddev = _value(baseline, 'latency_stddev', config.latency_min_stddev_ms)
    latency_score = (_value(recent, 'latency') - _value(baseline, 'latency')) / max(latency_stddev,
                                                                                    config.latency_min_stddev_ms)

    baseline_rate = _error_rate(baseline)
    error_score = (_error_rate(recent) - baseline_rate) / max(baseline_rate, config.error_rate_floor)

    return {"cpu": cpu_score, "latency": latency_score, "error": error_score}


def score_deployment(deployment_id: str, recent, baseline, config=None) -> List[Anomaly]:
    """Classifies one deployment's scores into anomalies."""
    config = config or settings
    scores = compute_scores(recent, baseline, config)
    anomalies = []

    if scores["cpu"] > config.cpu_score_threshold:
        anomalies.append(Anomaly(
            deployment_id=deployment_id, type="high_cpu", severity="warning",
            current=round(_value(recent, 'cpu'), 2), baseline=round(_value(baseline, 'cpu'), 2),
            score=round(scores["cpu"], 2), unit="%", recommendation=REMEDIATIONS["high_cpu"],
        ))

    if scores["latency"] > config.latency_score_threshold:
        anomalies.append(Anomaly(
            deployment_id=deployment_id, type="high_latency", severity="warning",
            current=round(_value(recent, 'latency'), 2), baseline=round(_value(baseline, 'latency'), 2),
            score=round(scores["latency"], 2), unit="ms", recommendation=REMEDIATIONS["high_latency"],
        ))

    if scores["error"] > config.error_score_threshold:
        anomalies.append(Anomaly(
            deployment_id=deployment_id, type="high_error_rate", severity="critical",
            current=round(_error_rate(recent) * 100, 2), baseline=round(_error_rate(baseline) * 100, 2),
            score=round(scores["error"], 2), unit="% errors", recommendation=REMEDIATIONS["high_error_rate"],
        ))

    return anomalies


def find_anomalies(recent: pd.DataFrame, baseline: pd.DataFrame, config=None) -> List[Anomaly]:
    """Scores every deployment present in both windows."""
    config = config or settings
    baseline_map = {str(row['deployment_id']): row for row in baseline.to_dict('records')}
    anomalies = []
    for row in recent.to_dict('records'):
        deployment_id = str(row['deployment_id'])
        base = baseline_map.get(deployment_id)
        if base is None:
            logger.debug(f"No baseline for deployment {deployment_id}; skipping.")
            continue
        anomalies.extend(score_deployment(deployment_id, row, base, config))
    return anomalies


def detect_anomalies(team_id: str, engine=None, cache=None, config=None, now: datetime | None = None) -> AnomalyReport:
    """
    Compares each deployment's last hour against its 7-day baseline,
    caches the result and alerts on critical findings.
    """
    config = config or settings
    now = now or datetime.utcnow()
    recent = fetch_deployment_stats(
        team_id, timedelta(minutes=config.anomaly_recent_window_minutes), now=now, engine=engine
    )
    baseline = fetch_deployment_stats(
        team_id, timedelta(days=config.anomaly_baseline_window_days), now=now, engine=engine
    )

    anomalies = find_anomalies(recent, baseline, config)
    logger.info(f"Detected {len(anomalies)} anomalies across {len(recent)} deployments for team {team_id}")

    # The whole list is written even when empty so stale findings expire
    cache_result(f"anomalies:{team_id}", config.anomaly_ttl_seconds, anomalies, cache)

    critical = [a for a in anomalies if a.severity == "critical"]
    if critical:
        notify_critical_anomalies(team_id, critical, timestamp=now, engine=engine, config=config)

    return AnomalyReport(team_id=team_id, anomalies=anomalies, timestamp=now)
