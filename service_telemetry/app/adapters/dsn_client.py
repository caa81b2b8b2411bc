"""
Client for the Deep Space Network "DSN Now" XML feed.
"""

import xml.etree.ElementTree as ET
from typing import Dict, List, Optional

from shared.errors import MalformedResponseError

from ..caching import FetchResult
from ..domain.models import (
    DSNDish,
    DSNSignal,
    DSNStation,
    DSNStatus,
    DSNTarget,
    optional_float,
    optional_int,
)
from .base_client import GatewayClient, cache_key

DSN_CACHE = (5.0, 30.0)


def _signal(element: ET.Element) -> Optional[DSNSignal]:
    # Idle links are reported with signalType="none".
    signal_type = element.get("signalType", "none")
    if signal_type == "none" or element.get("active", "true") == "false":
        return None
    return DSNSignal(
        signal_type=signal_type,
        data_rate=optional_float(element.get("dataRate")),
        frequency=optional_float(element.get("frequency")),
        power=optional_float(element.get("power")),
        spacecraft=element.get("spacecraft"),
    )


def _dish(element: ET.Element) -> DSNDish:
    down: Dict[str, DSNSignal] = {}
    up: Dict[str, DSNSignal] = {}
    for tag, bucket in (("downSignal", down), ("upSignal", up)):
        for child in element.findall(tag):
            signal = _signal(child)
            if signal is not None and signal.spacecraft:
                bucket.setdefault(signal.spacecraft.upper(), signal)

    targets: List[DSNTarget] = []
    for child in element.findall("target"):
        name = child.get("name", "")
        targets.append(DSNTarget(
            name=name,
            spacecraft_id=optional_int(child.get("id")),
            down_signal=down.get(name.upper()),
            up_signal=up.get(name.upper()),
        ))

    return DSNDish(
        name=element.get("name", ""),
        azimuth_angle=optional_float(element.get("azimuthAngle")),
        elevation_angle=optional_float(element.get("elevationAngle")),
        wind_speed=optional_float(element.get("windSpeed")),
        targets=targets,
    )


def parse_dsn_feed(text: str) -> DSNStatus:
    """Decode the feed into stations and their dishes.

    The live feed lists each ``station`` element followed by its ``dish``
    siblings; dishes nested inside a station are accepted too.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise MalformedResponseError(f"DSN feed is not valid XML: {e}", service="dsn") from e

    stations: List[DSNStation] = []
    current: Optional[DSNStation] = None
    for element in root:
        if element.tag == "station":
            current = DSNStation(
                name=element.get("name", ""),
                friendly_name=element.get("friendlyName", ""),
                dishes=[_dish(dish) for dish in element.findall("dish")],
            )
            stations.append(current)
        elif element.tag == "dish" and current is not None:
            current.dishes.append(_dish(element))

    if not stations:
        raise MalformedResponseError("DSN feed contains no stations", service="dsn")

    return DSNStatus(stations=stations, timestamp=optional_int(root.findtext("timestamp")))


class DSNClient(GatewayClient):
    """Current antenna and link status."""

    OPERATIONS = {"status": "get_status"}

    async def get_status(self) -> FetchResult[DSNStatus]:
        async def load() -> DSNStatus:
            response = await self._get(self.base_url)
            return parse_dsn_feed(response.text)

        ttl, stale = DSN_CACHE
        return await self._cached(cache_key(self.service_key, "status", {}), load, ttl, stale)
