# distance.py
#
#   Geoapify geocoding + driving distance between two addresses.
#   Best effort: failures come back as {"success": False, ...}, they never
#   raise into scheduling. Results are cached per address pair (bounded LRU
#   with a TTL).

import logging
import time
from collections import OrderedDict
from typing import Optional, Tuple
from urllib.parse import quote

import httpx

from config.settings import DISTANCE_TIMEOUT_SECONDS, GEOAPIFY_API_BASE, GEOAPIFY_API_KEY
from src.api.models import DistanceEstimate
from src.api.retry import retry_with_backoff

logger = logging.getLogger(__name__)

STATIC_MAP_BASE = "https://maps.geoapify.com/v1/staticmap"

# error codes in failed responses; the web layer maps them to HTTP statuses
NOT_CONFIGURED = "not_configured"
GEOCODE_FAILED = "geocode_failed"
ROUTE_FAILED = "route_failed"
UNAVAILABLE = "unavailable"


def _failure(code: str, error: str, **extra) -> dict:
    return {"success": False, "code": code, "error": error, **extra}


class DistanceClient:
    """
    Request {fromAddress, toAddress} -> {success, distance: {km}, duration:
    {minutes}, mapUrl, from: {address}, to: {address}}.
    """

    def __init__(
        self,
        api_key: Optional[str] = GEOAPIFY_API_KEY,
        base_url: str = GEOAPIFY_API_BASE,
        timeout: float = DISTANCE_TIMEOUT_SECONDS,
        max_retries: int = 2,
        retry_delay: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cache_size: int = 512,
        cache_ttl_seconds: float = 6 * 3600,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._transport = transport
        self.cache_size = cache_size
        self.cache_ttl_seconds = cache_ttl_seconds
        # LRU of (expires_at, result) per address pair
        self._cache: "OrderedDict[Tuple[str, str], Tuple[float, dict]]" = OrderedDict()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def clear_cache(self):
        self._cache.clear()

    def _cached(self, key: Tuple[str, str]) -> Optional[dict]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        expires_at, result = entry
        if expires_at <= time.monotonic():
            del self._cache[key]
            return None
        self._cache.move_to_end(key)
        return result

    def _remember(self, key: Tuple[str, str], result: dict):
        self._cache[key] = (time.monotonic() + self.cache_ttl_seconds, result)
        self._cache.move_to_end(key)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    async def _get_json(self, client: httpx.AsyncClient, url: str, params: dict) -> Optional[dict]:
        """GET with retries on transport errors / 5xx. None on a 4xx."""

        async def _request():
            response = await client.get(url, params={**params, "apiKey": self.api_key})
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        response = await retry_with_backoff(
            _request,
            max_retries=self.max_retries,
            initial_delay=self.retry_delay,
            exceptions=(httpx.TransportError, httpx.HTTPStatusError),
            label=f"GET {url}",
        )
        if response.status_code != 200:
            logger.warning(f"Geoapify {url} returned {response.status_code}")
            return None
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"unexpected payload from {url}")
        return data

    async def _geocode(self, client: httpx.AsyncClient, address: str) -> Optional[dict]:
        data = await self._get_json(client, f"{self.base_url}/geocode/search", {"text": address, "limit": 1})
        features = (data or {}).get("features") or []
        if not features:
            return None
        feature = features[0]
        lon, lat = feature["geometry"]["coordinates"][:2]
        return {
            "lat": lat,
            "lon": lon,
            "address": (feature.get("properties") or {}).get("formatted") or address,
        }

    def _map_url(self, origin: dict, dest: dict) -> str:
        markers = (
            f"lonlat:{origin['lon']},{origin['lat']};type:awesome;color:{quote('#bb3f73')};size:large|"
            f"lonlat:{dest['lon']},{dest['lat']};type:awesome;color:{quote('#1da1f2')};size:large"
        )
        return f"{STATIC_MAP_BASE}?style=osm-bright&width=600&height=300&marker={markers}&apiKey={self.api_key}"

    async def calculate(self, from_address: str, to_address: str) -> dict:
        """Distance + drive time between two addresses (see class docstring for the shape)."""
        origin_text = (from_address or "").strip()
        dest_text = (to_address or "").strip()
        if not origin_text or not dest_text:
            return _failure(GEOCODE_FAILED, "Missing fromAddress or toAddress")
        if not self.configured:
            return _failure(NOT_CONFIGURED, "Geoapify API key not configured")

        key = (origin_text, dest_text)
        cached = self._cached(key)
        if cached is not None:
            return cached

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                origin = await self._geocode(client, origin_text)
                if origin is None:
                    return _failure(GEOCODE_FAILED, "Could not geocode origin address", fromAddress=origin_text)
                dest = await self._geocode(client, dest_text)
                if dest is None:
                    return _failure(GEOCODE_FAILED, "Could not geocode destination address", toAddress=dest_text)

                route = await self._get_json(
                    client,
                    f"{self.base_url}/routing",
                    {"waypoints": f"{origin['lat']},{origin['lon']}|{dest['lat']},{dest['lon']}", "mode": "drive"},
                )
            features = (route or {}).get("features") or []
            if not features:
                return _failure(ROUTE_FAILED, "No route found between addresses")
            props = features[0].get("properties") or {}
            meters = float(props.get("distance") or 0)
            seconds = float(props.get("time") or 0)
        except httpx.HTTPError as e:
            logger.error(f"Distance lookup {origin_text!r} -> {dest_text!r} failed: {e}")
            return _failure(UNAVAILABLE, f"Distance service unavailable: {e}")
        except (ValueError, KeyError, TypeError, IndexError, AttributeError) as e:
            # 200 with a body we can't read (maintenance page, missing geometry)
            logger.error(f"Distance lookup {origin_text!r} -> {dest_text!r} got a malformed response: {e!r}")
            return _failure(UNAVAILABLE, "Distance service returned an unreadable response")

        result = {
            "success": True,
            "from": {"address": origin["address"], "lat": origin["lat"], "lon": origin["lon"]},
            "to": {"address": dest["address"], "lat": dest["lat"], "lon": dest["lon"]},
            "distance": {"km": round(meters / 1000, 1), "meters": meters},
            "duration": {"minutes": round(seconds / 60), "seconds": seconds},
            "mapUrl": self._map_url(origin, dest),
        }
        self._remember(key, result)
        return result


def make_distance_lookup(client: DistanceClient):
    """
    Adapt a DistanceClient to the async (from, to) -> DistanceEstimate | None
    lookup the scheduler and route optimizer take.
    """

    async def lookup(from_address: str, to_address: str) -> Optional[DistanceEstimate]:
        if not client.configured:
            return None
        result = await client.calculate(from_address, to_address)
        if not result.get("success"):
            logger.debug(f"No distance for {from_address!r} -> {to_address!r}: {result.get('error')}")
            return None
        return DistanceEstimate(
            distance_km=result["distance"]["km"],
            travel_mins=result["duration"]["minutes"],
        )

    return lookup
