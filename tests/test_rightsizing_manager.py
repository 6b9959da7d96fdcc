import pytest

from ops_engine import rightsizing_manager
from ops_engine.rightsizing_manager import build_resource_recommendation, get_resource_recommendations, round_up
from ops_engine.custom_exceptions import InsufficientDataError


def usage_stats(avg_cpu=20.0, peak_cpu=90.0, p95_cpu=35.0, p99_cpu=60.0,
                avg_memory=40.0, peak_memory=85.0, p95_memory=60.0, p99_memory=75.0):
    return {
        'avg_cpu': avg_cpu, 'peak_cpu': peak_cpu, 'p95_cpu': p95_cpu, 'p99_cpu': p99_cpu,
        'avg_memory': avg_memory, 'peak_memory': peak_memory, 'p95_memory': p95_memory, 'p99_memory': p99_memory,
    }


def test_cpu_sized_from_p95_and_average(config):
    cpu = build_resource_recommendation("proj-1", usage_stats(), config).cpu

    assert cpu.unit == "m"
    assert cpu.current == 1000
    assert cpu.recommended == 400
    assert cpu.reservation == 200
    assert cpu.savings_pct == 60.0


def test_memory_sized_from_p95_and_average(config):
    memory = build_resource_recommendation("proj-1", usage_stats(), config).memory

    assert memory.unit == "Mi"
    assert memory.current == 512
    assert memory.recommended == 400
    assert memory.reservation == 300
    assert memory.savings_pct == pytest.approx(21.9)


def test_autoscaling_bounds(config):
    bounds = build_resource_recommendation("proj-1", usage_stats(peak_cpu=180.0), config).autoscaling

    assert bounds.min_replicas == 2
    assert bounds.max_replicas == 4
    assert bounds.target_cpu_utilization == 70
    assert bounds.target_memory_utilization == 75


def test_max_replicas_never_below_floor(config):
    bounds = build_resource_recommendation("proj-1", usage_stats(peak_cpu=50.0), config).autoscaling
    assert bounds.max_replicas == 2


@pytest.mark.parametrize("avg_cpu, p95_cpu", [(0.0, 0.0), (12.0, 3.0), (55.5, 71.2), (99.0, 150.0), (-5.0, 10.0)])
def test_recommended_covers_reservation_in_whole_steps(avg_cpu, p95_cpu, config):
    cpu = build_resource_recommendation("proj-1", usage_stats(avg_cpu=avg_cpu, p95_cpu=p95_cpu), config).cpu

    assert cpu.recommended >= cpu.reservation >= 0
    assert cpu.recommended % 100 == 0
    assert cpu.reservation % 100 == 0


def test_round_up_is_exact_on_step_boundaries():
    assert round_up(350.0, 100) == 400
    assert round_up(400.0, 100) == 400
    assert round_up(0.0, 100) == 0


def test_usage_percentiles_are_reported(config):
    result = build_resource_recommendation("proj-1", usage_stats(), config)

    assert result.cpu_usage.p95 == 35.0
    assert result.cpu_usage.p99 == 60.0
    assert result.memory_usage.peak == 85.0


def test_no_samples_is_insufficient(config):
    with pytest.raises(InsufficientDataError):
        build_resource_recommendation("proj-1", {'avg_cpu': None, 'peak_cpu': None}, config)


def test_thresholds_are_tunable(config):
    tuned = config.model_copy(update={"default_cpu_millicores": 2000, "cpu_step_millicores": 250})
    cpu = build_resource_recommendation("proj-1", usage_stats(), tuned).cpu

    assert cpu.recommended == 750
    assert cpu.reservation == 500


def test_get_resource_recommendations_reads_thirty_days(monkeypatch, config):
    seen = {}

    def _fetch(project_id, days, engine=None):
        seen["args"] = (project_id, days)
        return usage_stats()

    monkeypatch.setattr(rightsizing_manager, "fetch_usage_percentiles", _fetch)

    result = get_resource_recommendations("proj-3", config=config)

    assert seen["args"] == ("proj-3", 30)
    assert result.project_id == "proj-3"
