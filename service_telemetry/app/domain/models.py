"""
Typed records returned by the gateway.

Callers only ever see these, never raw provider payloads. Numeric fields
that a provider omitted (or that could not be decoded) are None, which
means "unavailable", not zero.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

AU_KM = 149597870.7
LUNAR_DISTANCES_PER_AU = 389.1727
SPEED_OF_LIGHT_KM_S = 299792.458


def optional_float(value: Any) -> Optional[float]:
    """Coerce provider values to float, keeping absence as None."""
    if value is None or value == "":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def optional_int(value: Any) -> Optional[int]:
    number = optional_float(value)
    return int(number) if number is not None else None


def _serialize(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@dataclass(frozen=True)
class Vector3:
    """Cartesian triple."""

    x: float
    y: float
    z: float

    @property
    def magnitude(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z}


@dataclass(frozen=True)
class EphemerisRecord:
    """One row of a Horizons ephemeris, with every field optional."""

    timestamp_utc: Optional[datetime] = None
    position_km: Optional[Vector3] = None
    velocity_km_per_sec: Optional[Vector3] = None
    right_ascension: Optional[float] = None
    declination: Optional[float] = None
    distance_from_earth_au: Optional[float] = None
    distance_from_sun_au: Optional[float] = None
    eccentricity: Optional[float] = None
    perihelion_distance_au: Optional[float] = None
    inclination_deg: Optional[float] = None
    apparent_magnitude: Optional[float] = None

    @property
    def distance_km(self) -> Optional[float]:
        if self.position_km is not None:
            return self.position_km.magnitude
        if self.distance_from_earth_au is not None:
            return self.distance_from_earth_au * AU_KM
        return None

    @property
    def speed_km_per_sec(self) -> Optional[float]:
        if self.velocity_km_per_sec is None:
            return None
        return self.velocity_km_per_sec.magnitude

    @property
    def light_time_seconds(self) -> Optional[float]:
        distance = self.distance_km
        if distance is None:
            return None
        return distance / SPEED_OF_LIGHT_KM_S

    @property
    def is_empty(self) -> bool:
        return all(value is None for value in asdict(self).values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp_utc": _serialize(self.timestamp_utc),
            "position_km": self.position_km.to_dict() if self.position_km else None,
            "velocity_km_per_sec": self.velocity_km_per_sec.to_dict() if self.velocity_km_per_sec else None,
            "right_ascension": self.right_ascension,
            "declination": self.declination,
            "distance_from_earth_au": self.distance_from_earth_au,
            "distance_from_sun_au": self.distance_from_sun_au,
            "eccentricity": self.eccentricity,
            "perihelion_distance_au": self.perihelion_distance_au,
            "inclination_deg": self.inclination_deg,
            "apparent_magnitude": self.apparent_magnitude,
            "distance_km": self.distance_km,
            "speed_km_per_sec": self.speed_km_per_sec,
            "light_time_seconds": self.light_time_seconds,
        }


@dataclass(frozen=True)
class SpacecraftPosition:
    """Ephemeris view for a tracked spacecraft plus signal delays."""

    spacecraft_id: str
    name: str
    naif_id: str
    record: EphemerisRecord

    @property
    def distance_km(self) -> Optional[float]:
        return self.record.distance_km

    @property
    def light_time_seconds(self) -> Optional[float]:
        return self.record.light_time_seconds

    @property
    def communication_delay_round_trip_seconds(self) -> Optional[float]:
        one_way = self.light_time_seconds
        return None if one_way is None else one_way * 2

    def to_dict(self) -> Dict[str, Any]:
        payload = self.record.to_dict()
        payload.update({
            "spacecraft_id": self.spacecraft_id,
            "name": self.name,
            "naif_id": self.naif_id,
            "communication_delay_round_trip_seconds": self.communication_delay_round_trip_seconds,
        })
        return payload


@dataclass(frozen=True)
class ObjectEphemeris:
    """Sky position and orbit for a small body such as an interstellar comet."""

    object_id: str
    designation: str
    alternate_name: Optional[str]
    kind: str
    record: EphemerisRecord

    def to_dict(self) -> Dict[str, Any]:
        return {
            "object_id": self.object_id,
            "designation": self.designation,
            "alternate_name": self.alternate_name,
            "kind": self.kind,
            "ephemeris": self.record.to_dict(),
        }


@dataclass(frozen=True)
class AstronomyPicture:
    """Astronomy Picture of the Day entry."""

    date: str
    title: str
    explanation: str
    url: Optional[str]
    hd_url: Optional[str]
    media_type: str
    copyright: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AstronomyPicture":
        return cls(
            date=payload.get("date", ""),
            title=payload.get("title", ""),
            explanation=payload.get("explanation", ""),
            url=payload.get("url"),
            hd_url=payload.get("hdurl"),
            media_type=payload.get("media_type", "image"),
            copyright=(payload.get("copyright") or "").strip() or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RoverPhoto:
    """A single Mars rover image."""

    id: int
    sol: int
    earth_date: str
    camera_name: str
    camera_full_name: str
    image_url: str
    rover_name: str
    rover_status: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RoverPhoto":
        camera = payload.get("camera") or {}
        rover = payload.get("rover") or {}
        return cls(
            id=int(payload["id"]),
            sol=int(payload.get("sol", 0)),
            earth_date=payload.get("earth_date", ""),
            camera_name=camera.get("name", ""),
            camera_full_name=camera.get("full_name", ""),
            image_url=payload.get("img_src", ""),
            rover_name=rover.get("name", ""),
            rover_status=rover.get("status"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RoverManifest:
    """Mission summary for a rover."""

    rover_name: str
    status: str
    landing_date: str
    launch_date: str
    max_sol: int
    max_date: str
    total_photos: int

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RoverManifest":
        manifest = payload.get("photo_manifest", payload)
        return cls(
            rover_name=manifest.get("name", ""),
            status=manifest.get("status", ""),
            landing_date=manifest.get("landing_date", ""),
            launch_date=manifest.get("launch_date", ""),
            max_sol=int(manifest.get("max_sol", 0)),
            max_date=manifest.get("max_date", ""),
            total_photos=int(manifest.get("total_photos", 0)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NearEarthObject:
    """One entry of the NeoWs feed."""

    id: str
    name: str
    absolute_magnitude: Optional[float]
    diameter_min_km: Optional[float]
    diameter_max_km: Optional[float]
    hazardous: bool
    close_approach_date: Optional[str]
    miss_distance_km: Optional[float]
    relative_velocity_km_s: Optional[float]

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "NearEarthObject":
        diameter = (payload.get("estimated_diameter") or {}).get("kilometers") or {}
        approaches = payload.get("close_approach_data") or []
        approach = approaches[0] if approaches else {}
        return cls(
            id=str(payload.get("id", "")),
            name=payload.get("name", ""),
            absolute_magnitude=optional_float(payload.get("absolute_magnitude_h")),
            diameter_min_km=optional_float(diameter.get("estimated_diameter_min")),
            diameter_max_km=optional_float(diameter.get("estimated_diameter_max")),
            hazardous=bool(payload.get("is_potentially_hazardous_asteroid", False)),
            close_approach_date=approach.get("close_approach_date"),
            miss_distance_km=optional_float((approach.get("miss_distance") or {}).get("kilometers")),
            relative_velocity_km_s=optional_float(
                (approach.get("relative_velocity") or {}).get("kilometers_per_second")
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def approach_severity(distance_au: Optional[float]) -> Optional[str]:
    """Band a close-approach distance."""
    if distance_au is None:
        return None
    if distance_au < 0.0005:
        return "extreme"
    if distance_au < 0.002:
        return "very-close"
    if distance_au < 0.01:
        return "close"
    if distance_au < 0.05:
        return "moderate"
    return "distant"


@dataclass(frozen=True)
class CloseApproach:
    """A row of the close-approach database."""

    designation: str
    julian_date: Optional[float]
    calendar_date: str
    distance_au: Optional[float]
    distance_min_au: Optional[float]
    distance_max_au: Optional[float]
    velocity_km_s: Optional[float]
    uncertainty: Optional[str]
    magnitude: Optional[float]

    @property
    def distance_km(self) -> Optional[float]:
        return None if self.distance_au is None else self.distance_au * AU_KM

    @property
    def distance_lunar(self) -> Optional[float]:
        return None if self.distance_au is None else self.distance_au * LUNAR_DISTANCES_PER_AU

    @property
    def severity(self) -> Optional[str]:
        return approach_severity(self.distance_au)

    @classmethod
    def from_row(cls, fields: List[str], row: List[Any]) -> "CloseApproach":
        values = dict(zip(fields, row))
        return cls(
            designation=str(values.get("des", "")),
            julian_date=optional_float(values.get("jd")),
            calendar_date=str(values.get("cd", "")),
            distance_au=optional_float(values.get("dist")),
            distance_min_au=optional_float(values.get("dist_min")),
            distance_max_au=optional_float(values.get("dist_max")),
            velocity_km_s=optional_float(values.get("v_rel")),
            uncertainty=values.get("t_sigma_f"),
            magnitude=optional_float(values.get("h")),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.update({
            "distance_km": self.distance_km,
            "distance_lunar": self.distance_lunar,
            "severity": self.severity,
        })
        return payload


@dataclass(frozen=True)
class SmallBody:
    """Small-body database lookup result."""

    designation: str
    full_name: str
    kind: Optional[str]
    neo: bool
    pha: bool
    orbit_class: Optional[str]
    elements: Dict[str, Optional[float]] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SmallBody":
        obj = payload.get("object") or {}
        orbit = payload.get("orbit") or {}
        orbit_class = (obj.get("orbit_class") or {}).get("name")
        elements = {
            element.get("name"): optional_float(element.get("value"))
            for element in orbit.get("elements") or []
            if element.get("name")
        }
        return cls(
            designation=str(obj.get("des", "")),
            full_name=str(obj.get("fullname", "")).strip(),
            kind=obj.get("kind"),
            neo=bool(obj.get("neo", False)),
            pha=bool(obj.get("pha", False)),
            orbit_class=orbit_class,
            elements=elements,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def torino_hazard_level(torino: Optional[int]) -> Optional[str]:
    """Torino scale category."""
    if torino is None:
        return None
    if torino <= 0:
        return "no-hazard"
    if torino == 1:
        return "normal"
    if torino <= 4:
        return "meriting-attention"
    if torino <= 7:
        return "threatening"
    return "certain-collision"


@dataclass(frozen=True)
class SentryObject:
    """An object on the Sentry impact-monitoring list."""

    designation: str
    full_name: str
    impact_probability: Optional[float]
    palermo_cumulative: Optional[float]
    torino_max: Optional[int]
    impact_count: Optional[int]
    last_observation: Optional[str]
    absolute_magnitude: Optional[float]
    diameter_km: Optional[float] = None

    @property
    def hazard_level(self) -> Optional[str]:
        return torino_hazard_level(self.torino_max)

    @property
    def impact_odds(self) -> Optional[int]:
        """N in "1 in N"; None when the probability is unknown or zero."""
        if not self.impact_probability:
            return None
        return round(1.0 / self.impact_probability)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SentryObject":
        designation = str(payload.get("des", ""))
        return cls(
            designation=designation,
            full_name=str(payload.get("fullname") or designation).strip(),
            impact_probability=optional_float(payload.get("ip")),
            palermo_cumulative=optional_float(payload.get("ps_cum")),
            torino_max=optional_int(payload.get("ts_max")),
            impact_count=optional_int(payload.get("n_imp")),
            last_observation=payload.get("last_obs"),
            absolute_magnitude=optional_float(payload.get("h")),
            diameter_km=optional_float(payload.get("diameter")),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.update({"hazard_level": self.hazard_level, "impact_odds": self.impact_odds})
        return payload


def fireball_size_category(energy_kt: Optional[float]) -> Optional[str]:
    """Band a fireball by total radiated energy."""
    if energy_kt is None:
        return None
    if energy_kt > 50:
        return "large"
    if energy_kt > 10:
        return "medium"
    if energy_kt > 1:
        return "small"
    return "very-small"


def _signed(value: Optional[float], direction: Optional[str], negative: str) -> Optional[float]:
    if value is None:
        return None
    return -value if (direction or "").upper() == negative else value


@dataclass(frozen=True)
class Fireball:
    """A bright meteor reported by government sensors."""

    date: str
    energy_kt: Optional[float]
    impact_energy_kt: Optional[float]
    latitude: Optional[float]
    longitude: Optional[float]
    altitude_km: Optional[float]
    velocity_km_s: Optional[float]

    @property
    def size_category(self) -> Optional[str]:
        return fireball_size_category(self.energy_kt)

    @classmethod
    def from_row(cls, fields: List[str], row: List[Any]) -> "Fireball":
        values = dict(zip(fields, row))
        return cls(
            date=str(values.get("date") or ""),
            energy_kt=optional_float(values.get("energy")),
            impact_energy_kt=optional_float(values.get("impact-e")),
            latitude=_signed(optional_float(values.get("lat")), values.get("lat-dir"), "S"),
            longitude=_signed(optional_float(values.get("lon")), values.get("lon-dir"), "W"),
            altitude_km=optional_float(values.get("alt")),
            velocity_km_s=optional_float(values.get("vel")),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["size_category"] = self.size_category
        return payload


@dataclass(frozen=True)
class ScoutObject:
    """A newly discovered, unconfirmed object tracked by Scout."""

    designation: str
    full_name: str
    observations: Optional[int]
    arc_hours: Optional[float]
    absolute_magnitude: Optional[float]
    neo_rating: int
    uncertainty: Optional[str]
    impact_solutions: Optional[int]
    impact_probability: Optional[float]
    palermo_cumulative: Optional[float]
    close_approach_au: Optional[float]
    velocity_infinity_km_s: Optional[float]
    last_run: Optional[str] = None

    @property
    def has_impact_risk(self) -> bool:
        return bool(self.impact_solutions) and bool(self.impact_probability)

    @property
    def status(self) -> str:
        if self.has_impact_risk:
            return "analyzing-impact-risk"
        if self.neo_rating >= 7:
            return "high-priority"
        if self.neo_rating >= 4:
            return "under-analysis"
        return "tracking"

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ScoutObject":
        designation = str(payload.get("tdes") or payload.get("objectName") or "")
        return cls(
            designation=designation,
            full_name=str(payload.get("fullname") or designation).strip(),
            observations=optional_int(payload.get("nobs")),
            arc_hours=optional_float(payload.get("arc")),
            absolute_magnitude=optional_float(payload.get("H")),
            neo_rating=optional_int(payload.get("rate")) or 0,
            uncertainty=payload.get("unc"),
            impact_solutions=optional_int(payload.get("n_imp")),
            impact_probability=optional_float(payload.get("ip")),
            palermo_cumulative=optional_float(payload.get("ps_cum")),
            close_approach_au=optional_float(payload.get("ca_dist")),
            velocity_infinity_km_s=optional_float(payload.get("v_inf", payload.get("vInf"))),
            last_run=payload.get("lastRun", payload.get("lastrun")),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload.update({"status": self.status, "has_impact_risk": self.has_impact_risk})
        return payload


@dataclass(frozen=True)
class DSNSignal:
    """Up- or down-link on a dish."""

    signal_type: str
    data_rate: Optional[float]
    frequency: Optional[float]
    power: Optional[float]
    spacecraft: Optional[str] = None


@dataclass(frozen=True)
class DSNTarget:
    name: str
    spacecraft_id: Optional[int]
    down_signal: Optional[DSNSignal] = None
    up_signal: Optional[DSNSignal] = None


@dataclass(frozen=True)
class DSNDish:
    name: str
    azimuth_angle: Optional[float]
    elevation_angle: Optional[float]
    wind_speed: Optional[float]
    targets: List[DSNTarget] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return any(t.down_signal or t.up_signal for t in self.targets)


@dataclass(frozen=True)
class DSNStation:
    name: str
    friendly_name: str
    dishes: List[DSNDish] = field(default_factory=list)


@dataclass(frozen=True)
class DSNStatus:
    """Snapshot of the Deep Space Network feed."""

    stations: List[DSNStation]
    timestamp: Optional[int]

    def active_links(self) -> List[Dict[str, Any]]:
        """Flatten to one row per spacecraft link."""
        links: List[Dict[str, Any]] = []
        for station in self.stations:
            for dish in station.dishes:
                for target in dish.targets:
                    signal = target.down_signal or target.up_signal
                    if signal is None:
                        continue
                    links.append({
                        "spacecraft": target.name,
                        "station": station.friendly_name or station.name,
                        "dish": dish.name,
                        "direction": "downlink" if target.down_signal else "uplink",
                        "data_rate": signal.data_rate,
                    })
        return links

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stations": [asdict(station) for station in self.stations],
            "timestamp": self.timestamp,
            "active_links": self.active_links(),
        }
