"""
Client for the JPL Horizons ephemeris API.

Horizons answers JSON whose ``result`` is the classic text report; the
report is decoded by :mod:`service_telemetry.app.domain.ephemeris`.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from shared.errors import GatewayError, MalformedResponseError, UpstreamError, ValidationError

from ..caching import FetchResult
from ..domain.ephemeris import EphemerisTable, parse_ephemeris, merge_records
from ..domain.models import EphemerisRecord, ObjectEphemeris, SpacecraftPosition
from .base_client import GatewayClient, cache_key

SPACECRAFT_CACHE = (21600.0, 21600.0)
INTERSTELLAR_CACHE = (3600.0, 3600.0)

GEOCENTRIC = "500@399"
HELIOCENTRIC = "500@10"

# spacecraft id -> (display name, NAIF id)
SPACECRAFT_IDS: Dict[str, Tuple[str, str]] = {
    "europa-clipper": ("Europa Clipper", "-159"),
    "lucy": ("Lucy", "-49"),
    "psyche": ("Psyche", "-255"),
    "osiris-apex": ("OSIRIS-APEX", "-64"),
    "juno": ("Juno", "-61"),
    "new-horizons": ("New Horizons", "-98"),
    "voyager-1": ("Voyager 1", "-31"),
    "voyager-2": ("Voyager 2", "-32"),
    "parker-solar-probe": ("Parker Solar Probe", "-96"),
}

# object id -> (designation, Horizons name, kind)
INTERSTELLAR_OBJECTS: Dict[str, Tuple[str, str, str]] = {
    "3I": ("3I/ATLAS", "C/2025 N1", "Interstellar Comet"),
    "2I": ("2I/Borisov", "C/2019 Q4", "Interstellar Comet"),
    "1I": ("1I/'Oumuamua", "A/2017 U1", "Interstellar Object"),
}


def _quoted(value: str) -> str:
    return f"'{value}'"


class HorizonsClient(GatewayClient):
    """Spacecraft positions and small-body ephemerides."""

    OPERATIONS = {
        "spacecraft_position": "get_spacecraft_position",
        "object_ephemeris": "get_object_ephemeris",
        "ephemeris": "get_ephemeris",
    }

    def __init__(self, *args, now=None, **kwargs):
        super().__init__(*args, **kwargs)
        self._now = now or (lambda: datetime.now(timezone.utc))

    def _time_span(self) -> Dict[str, str]:
        today = self._now().date()
        return {
            "START_TIME": _quoted(today.isoformat()),
            "STOP_TIME": _quoted((today + timedelta(days=1)).isoformat()),
            "STEP_SIZE": _quoted("1d"),
        }

    def _params(self, command: str, table: EphemerisTable, center: str) -> Dict[str, str]:
        params = {
            "format": "json",
            "COMMAND": _quoted(command),
            "OBJ_DATA": _quoted("NO"),
            "MAKE_EPHEM": _quoted("YES"),
            "EPHEM_TYPE": _quoted(table.value),
            "CENTER": _quoted(center),
            **self._time_span(),
        }
        if table is EphemerisTable.VECTORS:
            params.update({
                "OUT_UNITS": _quoted("KM-S"),
                "REF_SYSTEM": _quoted("ICRF"),
                "VEC_TABLE": _quoted("2"),
                "CSV_FORMAT": _quoted("NO"),
            })
        elif table is EphemerisTable.OBSERVER:
            params["QUANTITIES"] = _quoted("1,9,19,20")
        return params

    async def _report(self, params: Dict[str, str]) -> str:
        """Fetch one Horizons report and return its text."""
        response = await self._get(self.base_url, params)
        payload = self._json(response)
        if not isinstance(payload, dict):
            raise MalformedResponseError("Horizons payload is not an object", service=self.service_key)
        if payload.get("error"):
            # Horizons reports bad commands with HTTP 200 and an error string.
            raise UpstreamError(
                400,
                f"Horizons rejected the query: {payload['error']}",
                service=self.service_key,
                details={"command": params.get("COMMAND")}
            )
        result = payload.get("result")
        if not isinstance(result, str):
            raise MalformedResponseError("Horizons payload missing result text", service=self.service_key)
        return result

    async def _ephemeris(self, command: str, table: EphemerisTable, center: str) -> EphemerisRecord:
        text = await self._report(self._params(command, table, center))
        return parse_ephemeris(text, table)

    async def get_ephemeris(self,
                            command: str,
                            table: str = EphemerisTable.VECTORS.value,
                            center: str = GEOCENTRIC) -> FetchResult[EphemerisRecord]:
        """Most recent row of an arbitrary Horizons ephemeris."""
        if not command or not command.strip():
            raise ValidationError("command is required", service=self.service_key)
        try:
            ephemeris_table = EphemerisTable(table.upper())
        except ValueError:
            raise ValidationError(
                f"Unknown ephemeris table '{table}'",
                service=self.service_key,
                details={"tables": [t.value for t in EphemerisTable]}
            )

        async def load() -> EphemerisRecord:
            return await self._ephemeris(command.strip(), ephemeris_table, center)

        ttl, stale = SPACECRAFT_CACHE
        key = cache_key(self.service_key, "ephemeris", {"command": command, "table": table, "center": center})
        return await self._cached(key, load, ttl, stale)

    async def get_spacecraft_position(self, spacecraft_id: str) -> FetchResult[SpacecraftPosition]:
        """Geocentric position, velocity and signal delay of a tracked spacecraft."""
        entry = SPACECRAFT_IDS.get(spacecraft_id)
        if entry is None:
            raise ValidationError(
                f"Unknown spacecraft '{spacecraft_id}'",
                service=self.service_key,
                details={"spacecraft": sorted(SPACECRAFT_IDS)}
            )
        name, naif_id = entry

        async def load() -> SpacecraftPosition:
            record = await self._ephemeris(naif_id, EphemerisTable.VECTORS, GEOCENTRIC)
            position = SpacecraftPosition(spacecraft_id, name, naif_id, record)
            if record.position_km is None:
                raise MalformedResponseError(
                    f"No position vector in Horizons report for {name}",
                    service=self.service_key,
                    partial=position
                )
            return position

        ttl, stale = SPACECRAFT_CACHE
        return await self._cached(cache_key(self.service_key, f"spacecraft:{spacecraft_id}", {}), load, ttl, stale)

    async def get_object_ephemeris(self, object_id: str) -> FetchResult[ObjectEphemeris]:
        """Sky position and orbital elements of an interstellar object.

        The observer table is required; the heliocentric elements table only
        fills fields the observer table lacks, and its failure is tolerated.
        """
        key_id = object_id.upper()
        entry = INTERSTELLAR_OBJECTS.get(key_id)
        if entry is None:
            raise ValidationError(
                f"Unknown interstellar object '{object_id}'",
                service=self.service_key,
                details={"objects": sorted(INTERSTELLAR_OBJECTS)}
            )
        designation, horizons_name, kind = entry

        async def load() -> ObjectEphemeris:
            observer = await self._dispatch(
                lambda: self._ephemeris(horizons_name, EphemerisTable.OBSERVER, GEOCENTRIC)
            )
            elements: Optional[EphemerisRecord] = None
            try:
                elements = await self._dispatch(
                    lambda: self._ephemeris(horizons_name, EphemerisTable.ELEMENTS, HELIOCENTRIC)
                )
            except GatewayError as e:
                self.logger.warning(
                    "Orbital elements unavailable",
                    object_id=key_id,
                    error_type=type(e).__name__,
                    error=str(e)
                )
            return ObjectEphemeris(
                object_id=key_id,
                designation=designation,
                alternate_name=horizons_name,
                kind=kind,
                record=merge_records(observer, elements),
            )

        ttl, stale = INTERSTELLAR_CACHE
        key = cache_key(self.service_key, f"interstellar:{key_id}", {})
        return await self._cached(key, load, ttl, stale, scheduled=False)


def describe_catalog() -> Dict[str, Any]:
    """Known spacecraft and interstellar objects, for discovery endpoints."""
    return {
        "spacecraft": {key: {"name": name, "naif_id": naif} for key, (name, naif) in SPACECRAFT_IDS.items()},
        "interstellar": {
            key: {"designation": des, "alternate_name": alt, "kind": kind}
            for key, (des, alt, kind) in INTERSTELLAR_OBJECTS.items()
        },
    }
