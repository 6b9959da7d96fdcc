import numpy as np
import pandas as pd
import pytest
from sqlalchemy import create_engine, text

from ops_engine.settings import Settings
from ops_engine.scaling_manager import model_cache


class FakeCache:
    """In-memory stand-in for the Redis client used by the result cache."""

    def __init__(self):
        self.store = {}
        self.ttls = {}

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl
        return True


@pytest.fixture
def fake_cache():
    return FakeCache()


@pytest.fixture
def config(tmp_path):
    return Settings(_env_file=None, model_registry_path=str(tmp_path / "model_registry"))


@pytest.fixture(autouse=True)
def reset_model_cache():
    model_cache.clear()
    yield
    model_cache.clear()


@pytest.fixture
def hourly_history():
    """Factory for hourly aggregates with a daily CPU/memory cycle."""
    def _make(hours, start="2024-02-05", base_cpu=40.0, amplitude=20.0):
        idx = pd.date_range(start, periods=hours, freq='h')
        cycle = np.sin(2 * np.pi * idx.hour.to_numpy() / 24)
        return pd.DataFrame({
            'hour': idx,
            'avg_cpu': base_cpu + amplitude * cycle,
            'avg_memory': 50.0 + 10.0 * cycle,
            'max_cpu': base_cpu + amplitude * cycle + 5.0,
            'max_memory': 60.0 + 10.0 * cycle,
            'request_count': 100,
        })
    return _make


@pytest.fixture
def daily_usage():
    """Factory for daily usage rows of one metric type."""
    def _make(metric_type, quantities, start="2024-01-01"):
        days = pd.date_range(start, periods=len(quantities), freq='D')
        return pd.DataFrame({'day': days, 'metric_type': metric_type, 'total_qty': list(quantities)})
    return _make


@pytest.fixture
def sqlite_engine():
    engine = create_engine("sqlite://")
    with engine.begin() as connection:
        connection.execute(text("""
            CREATE TABLE builds (
                id TEXT, project_id TEXT, status TEXT, duration_seconds REAL,
                artifact_size_mb REAL, cache_hit_rate REAL, created_at TEXT
            )
        """))
        connection.execute(text("CREATE TABLE teams (id TEXT, webhook_url TEXT)"))
        connection.execute(text("CREATE TABLE invoices (team_id TEXT, amount REAL, invoice_date TIMESTAMP)"))
        connection.execute(text(
            "CREATE TABLE build_analysis (project_id TEXT, analysis_data TEXT, created_at TIMESTAMP)"
        ))
    return engine
