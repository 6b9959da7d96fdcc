import json

import pytest
import redis

from ops_engine.cache_utils import cache_result
from ops_engine.schemas import UsagePercentiles
from ops_engine.custom_exceptions import UpstreamReadError


def test_models_are_stored_as_json(fake_cache):
    cache_result("usage:proj-1", 60, UsagePercentiles(avg=1.0, peak=4.0, p95=3.0, p99=3.5), fake_cache)

    assert fake_cache.ttls["usage:proj-1"] == 60
    assert json.loads(fake_cache.store["usage:proj-1"])["p95"] == 3.0


def test_last_write_wins(fake_cache):
    cache_result("anomalies:team-1", 300, [{"type": "high_cpu"}], fake_cache)
    cache_result("anomalies:team-1", 300, [], fake_cache)

    assert json.loads(fake_cache.store["anomalies:team-1"]) == []


def test_unreachable_cache_is_an_upstream_error():
    class DownCache:
        def setex(self, key, ttl, value):
            raise redis.ConnectionError("Connection refused")

    with pytest.raises(UpstreamReadError):
        cache_result("anomalies:team-1", 300, [], DownCache())
