"""
Client for the api.nasa.gov family (APOD, Mars rover photos, NeoWs).
"""

from datetime import date
from typing import Any, Dict, List, Optional

from shared.errors import MalformedResponseError, ValidationError

from ..caching import FetchResult
from ..domain.models import AstronomyPicture, NearEarthObject, RoverManifest, RoverPhoto
from .base_client import GatewayClient, cache_key

ROVERS = ("perseverance", "curiosity", "opportunity", "spirit")

# (ttl, stale_window) in seconds
ROVER_PHOTOS_CACHE = (1800.0, 3600.0)
ROVER_MANIFEST_CACHE = (86400.0, 43200.0)
LATEST_PHOTOS_CACHE = (3600.0, 1800.0)
APOD_CACHE = (3600.0, 86400.0)
NEO_FEED_CACHE = (3600.0, 3600.0)

LATEST_PHOTOS_SOL_SEARCH = 10
LATEST_PHOTOS_PER_SOL = 10


def _validate_rover(rover: str) -> str:
    name = (rover or "").lower()
    if name not in ROVERS:
        raise ValidationError(
            f"Unknown rover '{rover}'",
            service="nasa",
            details={"rovers": list(ROVERS)}
        )
    return name


def _validate_date(value: Optional[str], field: str) -> Optional[str]:
    if value is None:
        return None
    try:
        date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be YYYY-MM-DD", service="nasa", details={field: value})
    return value


def _interleave_cameras(photos: List[RoverPhoto], limit: int) -> List[RoverPhoto]:
    """Take photos round-robin across cameras so one camera does not dominate."""
    by_camera: Dict[str, List[RoverPhoto]] = {}
    for photo in photos:
        by_camera.setdefault(photo.camera_name, []).append(photo)

    picked: List[RoverPhoto] = []
    while len(picked) < limit and by_camera:
        for camera in list(by_camera):
            queue = by_camera[camera]
            picked.append(queue.pop(0))
            if not queue:
                del by_camera[camera]
            if len(picked) >= limit:
                break
    return picked


class NasaApiClient(GatewayClient):
    """api.nasa.gov operations. Every request carries the API key."""

    OPERATIONS = {
        "apod": "get_apod",
        "rover_photos": "get_rover_photos",
        "rover_manifest": "get_rover_manifest",
        "latest_rover_photos": "get_latest_rover_photos",
        "neo_feed": "get_neo_feed",
    }

    def __init__(self, *args, api_key: str = "DEMO_KEY", **kwargs):
        super().__init__(*args, **kwargs)
        self.api_key = api_key

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        query = dict(params or {})
        query["api_key"] = self.api_key
        response = await self._get(f"{self.base_url}{path}", query)
        return self._json(response)

    async def get_apod(self, date: Optional[str] = None) -> FetchResult[AstronomyPicture]:
        """Astronomy Picture of the Day, today's unless ``date`` is given."""
        _validate_date(date, "date")

        async def load() -> AstronomyPicture:
            payload = self._object(await self._get_json("/planetary/apod", {"date": date}), "APOD payload")
            return self._decode(AstronomyPicture.from_payload, payload)

        ttl, stale = APOD_CACHE
        return await self._cached(cache_key(self.service_key, "apod", {"date": date}), load, ttl, stale)

    async def get_rover_photos(self,
                               rover: str,
                               sol: Optional[int] = None,
                               earth_date: Optional[str] = None,
                               camera: Optional[str] = None,
                               page: int = 1) -> FetchResult[List[RoverPhoto]]:
        """Photos for one sol or one Earth date."""
        rover = _validate_rover(rover)
        _validate_date(earth_date, "earth_date")
        if (sol is None) == (earth_date is None):
            raise ValidationError("Provide exactly one of sol or earth_date", service=self.service_key)
        if sol is not None and int(sol) < 0:
            raise ValidationError("sol must be non-negative", service=self.service_key)

        params = {
            "sol": int(sol) if sol is not None else None,
            "earth_date": earth_date,
            "camera": camera.lower() if camera else None,
            "page": page,
        }

        async def load() -> List[RoverPhoto]:
            payload = self._object(await self._get_json(f"/mars-photos/api/v1/rovers/{rover}/photos", params))
            photos = payload.get("photos") or []
            if not isinstance(photos, list):
                raise MalformedResponseError("Rover photos payload is not a list", service=self.service_key)
            return [self._decode(RoverPhoto.from_payload, self._object(item, "rover photo")) for item in photos]

        ttl, stale = ROVER_PHOTOS_CACHE
        key = cache_key(self.service_key, f"rover_photos:{rover}", params)
        return await self._cached(key, load, ttl, stale)

    async def get_rover_manifest(self, rover: str) -> FetchResult[RoverManifest]:
        rover = _validate_rover(rover)

        async def load() -> RoverManifest:
            payload = self._object(await self._get_json(f"/mars-photos/api/v1/manifests/{rover}"))
            if not isinstance(payload.get("photo_manifest"), dict):
                raise MalformedResponseError("Manifest payload missing photo_manifest", service=self.service_key)
            return self._decode(RoverManifest.from_payload, payload)

        ttl, stale = ROVER_MANIFEST_CACHE
        return await self._cached(cache_key(self.service_key, f"rover_manifest:{rover}", {}), load, ttl, stale)

    async def get_latest_rover_photos(self, rover: str, limit: int = 25) -> FetchResult[List[RoverPhoto]]:
        """Most recent photos, walking back from the manifest's last sol.

        Searches at most ``LATEST_PHOTOS_SOL_SEARCH`` sols and takes up to
        ``LATEST_PHOTOS_PER_SOL`` photos per sol, spread across cameras.
        """
        rover = _validate_rover(rover)
        if limit < 1:
            raise ValidationError("limit must be positive", service=self.service_key)

        async def load() -> List[RoverPhoto]:
            manifest = (await self.get_rover_manifest(rover)).value
            collected: List[RoverPhoto] = []
            for sol in range(manifest.max_sol, max(-1, manifest.max_sol - LATEST_PHOTOS_SOL_SEARCH), -1):
                if len(collected) >= limit:
                    break
                photos = (await self.get_rover_photos(rover, sol=sol)).value
                if photos:
                    room = min(LATEST_PHOTOS_PER_SOL, limit - len(collected))
                    collected.extend(_interleave_cameras(photos, room))
            self.logger.info("Collected latest rover photos", rover=rover, count=len(collected))
            return collected[:limit]

        ttl, stale = LATEST_PHOTOS_CACHE
        key = cache_key(self.service_key, f"latest_rover_photos:{rover}", {"limit": limit})
        return await self._cached(key, load, ttl, stale, scheduled=False)

    async def get_neo_feed(self,
                           start_date: Optional[str] = None,
                           end_date: Optional[str] = None) -> FetchResult[List[NearEarthObject]]:
        """NeoWs feed, flattened across days and sorted by approach date."""
        _validate_date(start_date, "start_date")
        _validate_date(end_date, "end_date")
        if start_date and end_date and (date.fromisoformat(end_date) - date.fromisoformat(start_date)).days > 7:
            raise ValidationError("NeoWs feed range is limited to 7 days", service=self.service_key)

        params = {"start_date": start_date, "end_date": end_date}

        async def load() -> List[NearEarthObject]:
            payload = self._object(await self._get_json("/neo/rest/v1/feed", params))
            by_date = payload.get("near_earth_objects")
            if not isinstance(by_date, dict):
                raise MalformedResponseError("NeoWs payload missing near_earth_objects", service=self.service_key)
            return self._decode(
                lambda: [NearEarthObject.from_payload(item) for day in sorted(by_date) for item in by_date[day]]
            )

        ttl, stale = NEO_FEED_CACHE
        return await self._cached(cache_key(self.service_key, "neo_feed", params), load, ttl, stale)
