import io
import json
import urllib.error
import urllib.parse
import urllib.request
from datetime import date

import pytest

from incidents.config import CacheTTLs, Settings
from incidents.filters import FilterSpecification
from incidents.source import CachedIncidentSource, IncidentApiClient, SourceUnavailable


class FakeResponse(io.BytesIO):
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False


class FakeUpstream:
    """Stands in for urlopen: records requested URLs and replays canned bodies by path."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def __call__(self, req, timeout=None):
        url = urllib.parse.urlsplit(req.full_url)
        self.calls.append((url.path, urllib.parse.parse_qs(url.query)))
        body = self.routes[url.path]
        if isinstance(body, Exception):
            raise body
        return FakeResponse(body if isinstance(body, bytes) else json.dumps(body).encode("utf-8"))


@pytest.fixture
def upstream(monkeypatch):
    fake = FakeUpstream(
        {
            "/api/incidents": [{"uid": "1", "state": "TX"}],
            "/api/incidents/1": {"uid": "1", "state": "TX"},
            "/api/stats/series": [{"period": "2024-01", "incidents": 2, "killed": 1, "injured": 3}],
            "/api/stats/by-state": [{"state": "TX", "incidents": 2, "killed": 1, "injured": 3}],
            "/api/stats/heat": [{"geohash6": "9vk1mq", "incidents": 2, "lat": 29.7, "lng": -95.3}],
            "/api/lookups": {"states": ["TX"], "school_types": ["public"]},
        }
    )
    monkeypatch.setattr(urllib.request, "urlopen", fake)
    return fake


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


SPEC = FilterSpecification(
    date_from=date(2024, 1, 1),
    states=("TX", "CA"),
    school_types=("public",),
    min_killed=1,
    has_resource_officer=True,
)


def test_client_sends_filter_query_params(upstream):
    client = IncidentApiClient("http://upstream.test/")
    assert client.get_incidents(SPEC) == [{"uid": "1", "state": "TX"}]
    path, query = upstream.calls[0]
    assert path == "/api/incidents"
    assert query == {
        "from": ["2024-01-01"],
        "state": ["TX,CA"],
        "school_type": ["public"],
        "min_killed": ["1"],
        "has_resource_officer": ["true"],
    }


def test_stats_endpoints_send_their_subset(upstream):
    client = IncidentApiClient("http://upstream.test")
    client.get_series_by_month(SPEC)
    client.get_agg_by_state(SPEC)
    client.get_heat_grid(SPEC)
    series, by_state, heat = (q for _, q in upstream.calls)
    assert set(series) == {"from", "state", "school_type"}
    assert set(by_state) == {"from", "school_type"}
    assert set(heat) == {"from", "state", "school_type"}


def test_client_errors_become_source_unavailable(upstream):
    client = IncidentApiClient("http://upstream.test")
    upstream.routes["/api/incidents"] = urllib.error.URLError("connection refused")
    with pytest.raises(SourceUnavailable):
        client.get_incidents()

    upstream.routes["/api/incidents"] = b"<html>oops</html>"
    with pytest.raises(SourceUnavailable):
        client.get_incidents()

    upstream.routes["/api/incidents"] = {"not": "a list"}
    with pytest.raises(SourceUnavailable):
        client.get_incidents()


def test_cached_source_reuses_fresh_responses(upstream):
    clock = Clock()
    source = CachedIncidentSource(IncidentApiClient("http://upstream.test"), Settings(), timer=clock)
    first = source.fetch_incidents(SPEC)
    second = source.fetch_incidents(SPEC)
    assert first == second
    assert len(upstream.calls) == 1

    clock.now = CacheTTLs().incidents + 1
    source.fetch_incidents(SPEC)
    assert len(upstream.calls) == 2


def test_cache_keys_on_the_params_the_endpoint_uses(upstream):
    source = CachedIncidentSource(IncidentApiClient("http://upstream.test"), timer=Clock())
    source.fetch_agg_by_state(FilterSpecification(states=("TX",)))
    # by-state ignores the state filter, so this is the same query
    source.fetch_agg_by_state(FilterSpecification(states=("CA",)))
    assert len(upstream.calls) == 1


def test_failed_fetch_returns_none_and_is_not_cached(upstream):
    source = CachedIncidentSource(IncidentApiClient("http://upstream.test"), timer=Clock())
    upstream.routes["/api/lookups"] = urllib.error.URLError("down")
    assert source.fetch_lookups() is None

    upstream.routes["/api/lookups"] = {"states": ["TX"]}
    assert source.fetch_lookups() == {"states": ["TX"]}


def test_empty_upstream_result_is_not_unavailable(upstream):
    source = CachedIncidentSource(IncidentApiClient("http://upstream.test"), timer=Clock())
    upstream.routes["/api/incidents"] = []
    assert source.fetch_incidents() == []


def test_precomputed_bundle(upstream):
    source = CachedIncidentSource(IncidentApiClient("http://upstream.test"), timer=Clock())
    upstream.routes["/api/stats/heat"] = urllib.error.URLError("down")
    bundle = source.precomputed(SPEC)
    assert bundle["series"][0]["period"] == "2024-01"
    assert bundle["by_state"][0]["state"] == "TX"
    assert bundle["heat"] is None


def test_clear_drops_cached_entries(upstream):
    source = CachedIncidentSource(IncidentApiClient("http://upstream.test"), timer=Clock())
    source.fetch_incident("1")
    source.clear()
    source.fetch_incident("1")
    assert [p for p, _ in upstream.calls] == ["/api/incidents/1", "/api/incidents/1"]


def test_from_settings_requires_api_url():
    assert CachedIncidentSource.from_settings(Settings()) is None
    source = CachedIncidentSource.from_settings(Settings(api_url="http://upstream.test"))
    assert source.client.base_url == "http://upstream.test"
