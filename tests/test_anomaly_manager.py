import json
from datetime import datetime, timedelta

import pandas as pd
import pytest
from sqlalchemy import text

from ops_engine import anomaly_manager
from ops_engine.anomaly_manager import compute_scores, detect_anomalies, find_anomalies, score_deployment

NOW = datetime(2024, 5, 1, 12, 0)


def stats(deployment_id="dep-1", cpu=20.0, latency=100.0, latency_stddev=20.0, error_count=1, request_count=1000):
    return {
        'deployment_id': deployment_id,
        'cpu': cpu,
        'memory': 40.0,
        'latency': latency,
        'latency_stddev': latency_stddev,
        'error_count': error_count,
        'request_count': request_count,
    }


def test_recent_cpu_equal_to_baseline_scores_zero(config):
    scores = compute_scores(stats(cpu=35.0), stats(cpu=35.0), config)

    assert scores["cpu"] == 0
    assert score_deployment("dep-1", stats(cpu=35.0), stats(cpu=35.0), config) == []


def test_tenfold_cpu_is_high_cpu_warning(config):
    anomalies = score_deployment("dep-1", stats(cpu=80.0), stats(cpu=8.0), config)

    assert [a.type for a in anomalies] == ["high_cpu"]
    assert anomalies[0].severity == "warning"
    assert anomalies[0].score == pytest.approx(72.0)
    assert anomalies[0].current == 80.0
    assert anomalies[0].baseline == 8.0
    assert anomalies[0].recommendation == "Scale horizontally or increase resource limits"


def test_cpu_denominator_floor_applies_to_small_baselines(config):
    # 0.1 * 2% is below the floor of 1, so the raw difference is the score
    scores = compute_scores(stats(cpu=5.5), stats(cpu=2.0), config)
    assert scores["cpu"] == pytest.approx(3.5)


def test_latency_spike_is_high_latency_warning(config):
    anomalies = score_deployment("dep-1", stats(latency=200.0), stats(latency=100.0, latency_stddev=20.0), config)

    assert [a.type for a in anomalies] == ["high_latency"]
    assert anomalies[0].score == pytest.approx(5.0)
    assert anomalies[0].unit == "ms"


def test_missing_latency_stddev_uses_floor(config):
    scores = compute_scores(stats(latency=125.0), stats(latency=100.0, latency_stddev=None), config)
    assert scores["latency"] == pytest.approx(2.5)


def test_error_rate_burst_is_critical(config):
    anomalies = score_deployment(
        "dep-1", stats(error_count=50, request_count=1000), stats(error_count=10, request_count=10000), config
    )

    assert [a.type for a in anomalies] == ["high_error_rate"]
    assert anomalies[0].severity == "critical"
    assert anomalies[0].current == pytest.approx(5.0)
    assert anomalies[0].baseline == pytest.approx(0.1)
    assert anomalies[0].score == pytest.approx(4.9)
    assert anomalies[0].recommendation == "Trigger immediate rollback"


def test_steady_error_rate_is_not_flagged(config):
    scores = compute_scores(stats(error_count=20, request_count=1000), stats(error_count=140, request_count=7000), config)
    assert scores["error"] == pytest.approx(0.0)


def test_no_requests_means_zero_error_rate(config):
    scores = compute_scores(stats(error_count=0, request_count=0), stats(error_count=0, request_count=0), config)
    assert scores["error"] == 0


def test_deployments_without_baseline_are_skipped(config):
    recent = pd.DataFrame([stats("dep-1", cpu=90.0), stats("dep-new", cpu=95.0)])
    baseline = pd.DataFrame([stats("dep-1", cpu=9.0)])

    anomalies = find_anomalies(recent, baseline, config)

    assert {a.deployment_id for a in anomalies} == {"dep-1"}


def _patch_windows(monkeypatch, recent, baseline):
    def _fetch(team_id, window, now=None, engine=None):
        return recent if window <= timedelta(hours=1) else baseline
    monkeypatch.setattr(anomaly_manager, "fetch_deployment_stats", _fetch)


def test_detect_caches_and_alerts_on_critical(monkeypatch, config, fake_cache):
    recent = pd.DataFrame([stats("dep-1", cpu=90.0, error_count=80, request_count=1000), stats("dep-2")])
    baseline = pd.DataFrame([stats("dep-1", cpu=9.0), stats("dep-2")])
    _patch_windows(monkeypatch, recent, baseline)
    alerts = []
    monkeypatch.setattr(
        anomaly_manager, "notify_critical_anomalies",
        lambda team_id, anomalies, **kwargs: alerts.append((team_id, anomalies)) or True,
    )

    report = detect_anomalies("team-1", cache=fake_cache, config=config, now=NOW)

    assert {a.type for a in report.anomalies} == {"high_cpu", "high_error_rate"}
    assert report.timestamp == NOW
    assert fake_cache.ttls["anomalies:team-1"] == 300
    assert len(json.loads(fake_cache.store["anomalies:team-1"])) == 2
    assert len(alerts) == 1
    assert alerts[0][0] == "team-1"
    assert [a.type for a in alerts[0][1]] == ["high_error_rate"]


def test_detect_without_critical_findings_does_not_alert(monkeypatch, config, fake_cache):
    _patch_windows(monkeypatch, pd.DataFrame([stats()]), pd.DataFrame([stats()]))
    monkeypatch.setattr(
        anomaly_manager, "notify_critical_anomalies",
        lambda *args, **kwargs: pytest.fail("no alert expected"),
    )

    report = detect_anomalies("team-1", cache=fake_cache, config=config, now=NOW)

    assert report.anomalies == []
    assert json.loads(fake_cache.store["anomalies:team-1"]) == []


def test_detection_is_repeatable(monkeypatch, config, fake_cache):
    recent = pd.DataFrame([stats("dep-1", cpu=90.0, latency=400.0)])
    baseline = pd.DataFrame([stats("dep-1", cpu=9.0)])
    _patch_windows(monkeypatch, recent, baseline)

    first = detect_anomalies("team-1", cache=fake_cache, config=config, now=NOW)
    second = detect_anomalies("team-1", cache=fake_cache, config=config, now=NOW)

    assert first == second


def test_failed_webhook_lookup_does_not_fail_detection(monkeypatch, sqlite_engine, config, fake_cache):
    with sqlite_engine.begin() as connection:
        connection.execute(text("DROP TABLE teams"))
    recent = pd.DataFrame([stats("dep-1", error_count=80, request_count=1000)])
    baseline = pd.DataFrame([stats("dep-1")])
    _patch_windows(monkeypatch, recent, baseline)

    report = detect_anomalies("team-1", engine=sqlite_engine, cache=fake_cache, config=config, now=NOW)

    assert [a.type for a in report.anomalies] == ["high_error_rate"]
    assert len(json.loads(fake_cache.store["anomalies:team-1"])) == 1
