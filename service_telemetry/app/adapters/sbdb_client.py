"""
Client for the JPL Solar System Dynamics APIs.

Close approaches (cad.api), small-body lookups (sbdb.api), impact
monitoring (sentry.api), fireball reports (fireball.api) and newly
discovered objects (scout.api).
"""

from datetime import date
from typing import Any, Dict, List, Optional

from shared.errors import MalformedResponseError, UpstreamError, ValidationError

from ..caching import FetchResult
from ..domain.models import CloseApproach, Fireball, ScoutObject, SentryObject, SmallBody
from .base_client import GatewayClient, cache_key

# (ttl, stale_window) in seconds
CLOSE_APPROACH_CACHE = (3600.0, 3600.0)
SMALL_BODY_CACHE = (86400.0, 86400.0)
SENTRY_CACHE = (21600.0, 21600.0)
FIREBALL_CACHE = (21600.0, 21600.0)
SCOUT_CACHE = (600.0, 1800.0)

FIREBALL_MAX_LIMIT = 1000


class SmallBodyClient(GatewayClient):
    """JPL SSD lookups; these APIs publish no rate limit and take no key."""

    OPERATIONS = {
        "close_approaches": "get_close_approaches",
        "small_body": "get_small_body",
        "sentry": "get_sentry_objects",
        "fireballs": "get_fireballs",
        "scout": "get_scout_objects",
    }

    async def _get_object(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self._get(f"{self.base_url}{path}", params)
        return self._object(self._json(response))

    def _rows(self, payload: Dict[str, Any]) -> List[Any]:
        rows = payload.get("data") or []
        if not isinstance(rows, list):
            raise MalformedResponseError(f"{self.service_key} data is not a list", service=self.service_key)
        return rows

    def _table(self, payload: Dict[str, Any], decoder) -> List[Any]:
        """Decode a ``fields`` + ``data`` table into records."""
        fields = payload.get("fields")
        rows = self._rows(payload)
        if rows and not isinstance(fields, list):
            raise MalformedResponseError(f"{self.service_key} table is missing fields", service=self.service_key)
        return [self._decode(decoder, fields, row) for row in rows]

    async def get_close_approaches(self,
                                   designation: Optional[str] = None,
                                   date_min: str = "now",
                                   date_max: str = "+60",
                                   dist_max: str = "0.05",
                                   limit: Optional[int] = None) -> FetchResult[List[CloseApproach]]:
        """Close approaches to Earth sorted by date."""
        if limit is not None and limit < 1:
            raise ValidationError("limit must be positive", service=self.service_key)

        params = {
            "des": designation,
            "date-min": date_min,
            "date-max": date_max,
            "dist-max": dist_max,
            "sort": "date",
            "limit": limit,
        }

        async def load() -> List[CloseApproach]:
            return self._table(await self._get_object("/cad.api", params), CloseApproach.from_row)

        ttl, stale = CLOSE_APPROACH_CACHE
        return await self._cached(cache_key(self.service_key, "cad", params), load, ttl, stale)

    async def get_small_body(self, designation: str) -> FetchResult[SmallBody]:
        """Orbit and classification for one small body."""
        if not designation or not designation.strip():
            raise ValidationError("designation is required", service=self.service_key)
        designation = designation.strip()

        async def load() -> SmallBody:
            payload = await self._get_object("/sbdb.api", {"sstr": designation})
            if "object" not in payload:
                # Ambiguous or unknown designations come back 200 with a message.
                raise UpstreamError(
                    404,
                    str(payload.get("message") or f"No small body matches '{designation}'"),
                    service=self.service_key,
                    details={"designation": designation}
                )
            return self._decode(SmallBody.from_payload, payload)

        ttl, stale = SMALL_BODY_CACHE
        return await self._cached(cache_key(self.service_key, "sbdb", {"sstr": designation}), load, ttl, stale)

    async def get_sentry_objects(self) -> FetchResult[List[SentryObject]]:
        """Objects on the impact-monitoring list, most probable impactor first."""

        async def load() -> List[SentryObject]:
            payload = await self._get_object("/sentry.api")
            objects = [
                self._decode(SentryObject.from_payload, self._object(item, "Sentry entry"))
                for item in self._rows(payload)
            ]
            objects.sort(key=lambda obj: obj.impact_probability or 0.0, reverse=True)
            return objects

        ttl, stale = SENTRY_CACHE
        return await self._cached(cache_key(self.service_key, "sentry", {}), load, ttl, stale)

    async def get_fireballs(self,
                            limit: int = 50,
                            date_min: Optional[str] = None) -> FetchResult[List[Fireball]]:
        """Recent fireball reports, newest first."""
        if not 1 <= limit <= FIREBALL_MAX_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {FIREBALL_MAX_LIMIT}",
                service=self.service_key
            )
        if date_min is not None:
            try:
                date.fromisoformat(date_min)
            except ValueError:
                raise ValidationError("date_min must be YYYY-MM-DD", service=self.service_key,
                                      details={"date_min": date_min})

        params = {"limit": limit, "date-min": date_min}

        async def load() -> List[Fireball]:
            fireballs = self._table(await self._get_object("/fireball.api", params), Fireball.from_row)
            fireballs.sort(key=lambda fireball: fireball.date, reverse=True)
            return fireballs

        ttl, stale = FIREBALL_CACHE
        return await self._cached(cache_key(self.service_key, "fireball", params), load, ttl, stale)

    async def get_scout_objects(self, designation: Optional[str] = None) -> FetchResult[List[ScoutObject]]:
        """Unconfirmed objects under Scout analysis, highest NEO rating first.

        With ``designation`` Scout answers a single object rather than a list.
        """
        designation = designation.strip() if designation else None
        params = {"tdes": designation}

        async def load() -> List[ScoutObject]:
            payload = await self._get_object("/scout.api", params)
            if designation and "data" not in payload:
                entries = [payload] if payload.get("tdes") or payload.get("objectName") else []
            else:
                entries = self._rows(payload)
            objects = [
                self._decode(ScoutObject.from_payload, self._object(item, "Scout entry"))
                for item in entries
            ]
            objects.sort(key=lambda obj: (obj.neo_rating, obj.arc_hours or 0.0), reverse=True)
            return objects

        ttl, stale = SCOUT_CACHE
        return await self._cached(cache_key(self.service_key, "scout", params), load, ttl, stale)
