"""Upstream incident API client and its TTL-cached wrapper.

The client raises `SourceUnavailable` on any transport or decoding failure.
`CachedIncidentSource` turns that into `None` ("no data available"), which the
page computations treat differently from an empty result.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Callable, Dict, List, Optional, Tuple

from cachetools import TTLCache

from incidents.config import Settings
from incidents.filters import (
    BY_STATE_PARAMS,
    HEAT_PARAMS,
    SERIES_PARAMS,
    FilterSpecification,
    to_query_params,
)

logger = logging.getLogger(__name__)

CACHE_MAXSIZE = 128


class SourceUnavailable(Exception):
    """The upstream API could not be reached or returned an unusable response."""


class IncidentApiClient:
    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _url(self, path: str, params: Optional[Dict[str, str]] = None) -> str:
        url = f"{self.base_url}{path}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        return url

    def _request(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        req = urllib.request.Request(self._url(path, params), headers={"Accept": "application/json"}, method="GET")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            raise SourceUnavailable(f"{path}: upstream returned status {e.code}") from e
        except (urllib.error.URLError, OSError) as e:
            raise SourceUnavailable(f"{path}: {e}") from e
        try:
            return json.loads(body) if body else None
        except ValueError as e:
            raise SourceUnavailable(f"{path}: response is not JSON") from e

    def get_incidents(self, spec: Optional[FilterSpecification] = None) -> List[Dict[str, Any]]:
        data = self._request("/api/incidents", to_query_params(spec or FilterSpecification()))
        if not isinstance(data, list):
            raise SourceUnavailable("/api/incidents: expected a list of incidents")
        return data

    def get_incident(self, uid: str) -> Dict[str, Any]:
        data = self._request(f"/api/incidents/{urllib.parse.quote(str(uid), safe='')}")
        if not isinstance(data, dict):
            raise SourceUnavailable(f"/api/incidents/{uid}: expected an incident object")
        return data

    def get_series_by_month(self, spec: Optional[FilterSpecification] = None) -> List[Dict[str, Any]]:
        return self._request("/api/stats/series", to_query_params(spec or FilterSpecification(), SERIES_PARAMS)) or []

    def get_agg_by_state(self, spec: Optional[FilterSpecification] = None) -> List[Dict[str, Any]]:
        return self._request("/api/stats/by-state", to_query_params(spec or FilterSpecification(), BY_STATE_PARAMS)) or []

    def get_heat_grid(self, spec: Optional[FilterSpecification] = None) -> List[Dict[str, Any]]:
        return self._request("/api/stats/heat", to_query_params(spec or FilterSpecification(), HEAT_PARAMS)) or []

    def get_lookups(self) -> Dict[str, Any]:
        data = self._request("/api/lookups")
        if not isinstance(data, dict):
            raise SourceUnavailable("/api/lookups: expected an object")
        return data


def _cache_key(spec: Optional[FilterSpecification], only: Optional[Tuple[str, ...]] = None) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted(to_query_params(spec or FilterSpecification(), only).items()))


class CachedIncidentSource:
    """Per-query TTL caches in front of an IncidentApiClient."""

    def __init__(self, client: IncidentApiClient, settings: Optional[Settings] = None, timer: Optional[Callable[[], float]] = None):
        settings = settings or Settings()
        ttls = settings.ttls
        kwargs = {"timer": timer} if timer is not None else {}
        self.client = client
        self._caches: Dict[str, TTLCache] = {
            "incidents": TTLCache(maxsize=CACHE_MAXSIZE, ttl=ttls.incidents, **kwargs),
            "incident": TTLCache(maxsize=CACHE_MAXSIZE, ttl=ttls.incidents, **kwargs),
            "series": TTLCache(maxsize=CACHE_MAXSIZE, ttl=ttls.series, **kwargs),
            "state": TTLCache(maxsize=CACHE_MAXSIZE, ttl=ttls.state, **kwargs),
            "heat": TTLCache(maxsize=CACHE_MAXSIZE, ttl=ttls.heat, **kwargs),
            "lookups": TTLCache(maxsize=CACHE_MAXSIZE, ttl=ttls.lookups, **kwargs),
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["CachedIncidentSource"]:
        if not settings.api_url:
            return None
        return cls(IncidentApiClient(settings.api_url, settings.api_timeout), settings)

    def _fetch(self, cache_name: str, key: Any, call: Callable[[], Any]) -> Any:
        cache = self._caches[cache_name]
        if key in cache:
            return cache[key]
        try:
            value = call()
        except SourceUnavailable as e:
            logger.warning("Upstream %s query failed: %s", cache_name, e)
            return None
        cache[key] = value
        return value

    def clear(self) -> None:
        for cache in self._caches.values():
            cache.clear()

    def fetch_incidents(self, spec: Optional[FilterSpecification] = None) -> Optional[List[Dict[str, Any]]]:
        return self._fetch("incidents", _cache_key(spec), lambda: self.client.get_incidents(spec))

    def fetch_incident(self, uid: str) -> Optional[Dict[str, Any]]:
        return self._fetch("incident", str(uid), lambda: self.client.get_incident(uid))

    def fetch_series_by_month(self, spec: Optional[FilterSpecification] = None) -> Optional[List[Dict[str, Any]]]:
        return self._fetch("series", _cache_key(spec, SERIES_PARAMS), lambda: self.client.get_series_by_month(spec))

    def fetch_agg_by_state(self, spec: Optional[FilterSpecification] = None) -> Optional[List[Dict[str, Any]]]:
        return self._fetch("state", _cache_key(spec, BY_STATE_PARAMS), lambda: self.client.get_agg_by_state(spec))

    def fetch_heat_grid(self, spec: Optional[FilterSpecification] = None) -> Optional[List[Dict[str, Any]]]:
        return self._fetch("heat", _cache_key(spec, HEAT_PARAMS), lambda: self.client.get_heat_grid(spec))

    def fetch_lookups(self) -> Optional[Dict[str, Any]]:
        return self._fetch("lookups", "lookups", self.client.get_lookups)

    def precomputed(self, spec: Optional[FilterSpecification] = None) -> Dict[str, Any]:
        """Upstream aggregates for the analytics and map pages (None where unavailable)."""
        return {
            "series": self.fetch_series_by_month(spec),
            "by_state": self.fetch_agg_by_state(spec),
            "heat": self.fetch_heat_grid(spec),
        }
