"""
Decoder for the text ephemerides returned by the JPL Horizons API.

Horizons wraps its tables in free-form text: a header section, then the
data rows between ``$$SOE`` and ``$$EOE``. Column layout differs by table
type, output options and object type, so every field is located by label
where labels exist, by the CSV column header where one precedes the data,
and only then by value-range heuristics. A field that cannot be placed
with confidence stays None.

Everything here is pure: text in, :class:`EphemerisRecord` out.
"""

import math
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from shared.errors import MalformedResponseError

from .models import AU_KM, EphemerisRecord, Vector3

START_OF_EPHEMERIS = "$$SOE"
END_OF_EPHEMERIS = "$$EOE"

JULIAN_DATE_UNIX_EPOCH = 2440587.5

_NUMBER = r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?"
_NUMBER_RE = re.compile(rf"^{_NUMBER}$")
_RECORD_HEAD_RE = re.compile(r"^\s*\d+\.\d+\s*=")
_CALENDAR_RE = re.compile(
    r"(?:A\.D\.\s+)?(\d{4}-[A-Za-z]{3}-\d{2})(?:\s+(\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?))?"
)
_OBSERVER_ROW_RE = re.compile(r"^\s*\d{4}-[A-Za-z]{3}-\d{2}\s+\d{2}:\d{2}")
_SEXAGESIMAL_RA_RE = re.compile(r"^\s*(\d{1,2})\s+(\d{1,2})\s+(\d{1,2}(?:\.\d+)?)")
_SEXAGESIMAL_DEC_RE = re.compile(r"^\s*([-+])(\d{1,2})\s+(\d{1,2})\s+(\d{1,2}(?:\.\d+)?)")
_CENTER_RE = re.compile(r"Center body name\s*:\s*([A-Za-z][\w\- ]*?)\s*\(\s*(-?\d+)\s*\)")
_TABLE_DECLARATION_RE = re.compile(
    r"(?:EPHEM_TYPE|Table\s+(?:format|type))\s*[:=]\s*'?([A-Za-z]+)", re.IGNORECASE
)

_ELEMENT_LABELS = ("EC", "QR", "IN", "OM", "W", "Tp", "N", "MA", "TA", "A", "AD", "PR")

SUN_ID = 10
EARTH_ID = 399


class EphemerisTable(str, Enum):
    """Horizons EPHEM_TYPE values we decode."""
    VECTORS = "VECTORS"
    ELEMENTS = "ELEMENTS"
    OBSERVER = "OBSERVER"


def _label_value(line: str, label: str) -> Optional[float]:
    """Read ``label = number`` from a line, tolerant of spacing."""
    pattern = rf"(?<![A-Za-z]){re.escape(label)}\s*=\s*({_NUMBER})"
    match = re.search(pattern, line)
    return _to_float(match.group(1)) if match else None


def _to_float(token: str) -> Optional[float]:
    token = token.strip()
    if not _NUMBER_RE.match(token):
        return None
    value = float(token)
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def _split_block(text: str) -> Tuple[str, List[str]]:
    start = text.find(START_OF_EPHEMERIS)
    end = text.find(END_OF_EPHEMERIS, start + len(START_OF_EPHEMERIS)) if start != -1 else -1
    if start == -1 or end == -1:
        missing = [
            marker for marker, index in ((START_OF_EPHEMERIS, start), (END_OF_EPHEMERIS, end))
            if index == -1
        ]
        raise MalformedResponseError(
            "Malformed ephemeris: sentinel markers not found",
            service="horizons",
            details={"missing": missing}
        )

    header = text[:start]
    body = text[start + len(START_OF_EPHEMERIS):end]
    lines = [line.rstrip() for line in body.splitlines() if line.strip()]
    return header, lines


def extract_ephemeris_block(text: str) -> List[str]:
    """Non-empty lines between the sentinels.

    Raises MalformedResponseError when either sentinel is missing or the
    block holds no data lines.
    """
    _, lines = _split_block(text)
    if not lines:
        raise MalformedResponseError(
            "Malformed ephemeris: no data lines between sentinels",
            service="horizons"
        )
    return lines


def _column_header(header: str) -> List[str]:
    """CSV column names printed just above ``$$SOE``, if any."""
    candidates = [line.strip() for line in header.splitlines() if line.strip()]
    for line in reversed(candidates):
        if set(line) <= {"*", "-", "="}:
            continue
        if "," in line:
            return [name.strip() for name in line.split(",")]
        return []
    return []


def _observer_header(header: str) -> List[str]:
    """Whitespace-separated observer column names, if printed."""
    for line in reversed(header.splitlines()):
        if "Date" in line and ("R.A." in line or "RA" in line):
            return line.split()
    return []


def _center_body(header: str) -> Optional[int]:
    match = _CENTER_RE.search(header)
    return int(match.group(2)) if match else None


def parse_timestamp(line: str) -> Optional[datetime]:
    """Timestamp of a data row, from its calendar date or Julian date."""
    match = _CALENDAR_RE.search(line)
    if match:
        day, clock = match.group(1), match.group(2) or "00:00"
        stamp = f"{day} {clock}"
        for fmt in ("%Y-%b-%d %H:%M:%S.%f", "%Y-%b-%d %H:%M:%S", "%Y-%b-%d %H:%M"):
            try:
                return datetime.strptime(stamp, fmt).replace(tzinfo=timezone.utc)
            except ValueError:
                continue

    leading = line.strip().split(",")[0].split()[0] if line.strip() else ""
    julian = _to_float(leading)
    if julian is not None and julian > 1_000_000:
        return julian_to_datetime(julian)
    return None


def julian_to_datetime(julian_date: float) -> datetime:
    seconds = (julian_date - JULIAN_DATE_UNIX_EPOCH) * 86400.0
    return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=seconds)


def _first_record(lines: Sequence[str]) -> List[str]:
    """Lines belonging to the first (most recent) row of a labelled table."""
    record = [lines[0]]
    for line in lines[1:]:
        if _RECORD_HEAD_RE.match(line):
            break
        record.append(line)
    return record


def _triple(lines: Sequence[str], labels: Tuple[str, str, str]) -> Optional[Vector3]:
    for line in lines:
        if not line.strip().startswith(labels[0]):
            continue
        values = [_label_value(line, label) for label in labels]
        if all(value is not None for value in values):
            return Vector3(*values)
        return None
    return None


def _range_distance(position: Optional[Vector3], center: Optional[int]) -> Dict[str, Optional[float]]:
    if position is None:
        return {}
    distance_au = position.magnitude / AU_KM
    if center == EARTH_ID:
        return {"distance_from_earth_au": distance_au}
    if center == SUN_ID:
        return {"distance_from_sun_au": distance_au}
    return {}


def parse_vectors(text: str) -> EphemerisRecord:
    """Position and velocity from a VECTORS table."""
    header, lines = _split_block(text)
    if not lines:
        raise MalformedResponseError("Malformed ephemeris: no data lines between sentinels", service="horizons")

    center = _center_body(header)
    columns = _column_header(header)

    if "X" in columns and "VX" in columns:
        row = [cell.strip() for cell in lines[0].split(",")]
        cells = dict(zip(columns, row))
        position = _vector_from_cells(cells, ("X", "Y", "Z"))
        velocity = _vector_from_cells(cells, ("VX", "VY", "VZ"))
        timestamp = parse_timestamp(lines[0])
    else:
        record = _first_record(lines)
        position = _triple(record, ("X", "Y", "Z"))
        velocity = _triple(record, ("VX", "VY", "VZ"))
        timestamp = parse_timestamp(record[0])

    return EphemerisRecord(
        timestamp_utc=timestamp,
        position_km=position,
        velocity_km_per_sec=velocity,
        **_range_distance(position, center),
    )


def _vector_from_cells(cells: Dict[str, str], labels: Tuple[str, str, str]) -> Optional[Vector3]:
    values = [_to_float(cells.get(label, "")) for label in labels]
    if all(value is not None for value in values):
        return Vector3(*values)
    return None


def _first_in_range(tokens: Sequence[str], start: int, stop: int, low: float, high: float,
                    low_inclusive: bool = True, high_inclusive: bool = True) -> Tuple[Optional[float], int]:
    for index in range(max(0, start), min(len(tokens), stop)):
        value = _to_float(tokens[index])
        if value is None:
            continue
        above = value >= low if low_inclusive else value > low
        below = value <= high if high_inclusive else value < high
        if above and below:
            return value, index
    return None, -1


def heuristic_elements(line: str) -> Dict[str, Optional[float]]:
    """Pick orbital elements out of an unlabelled row by value range.

    Column order is not stable across object types, so each element is the
    first token after the previous pick that falls in its plausible range:
    eccentricity in [0.5, 50] (admits hyperbolic orbits), perihelion
    distance in (0, 10] AU, inclination in [0, 180] degrees. Rows wide
    enough to carry it give the distance from the Sun as the first token
    in (0, 100) AU from column 10 on.
    """
    line = line.strip()
    tokens = [t.strip() for t in line.split(",")] if "," in line else line.split()

    eccentricity, ec_index = _first_in_range(tokens, 2, 8, 0.5, 50.0)
    qr_start = ec_index + 1 if ec_index >= 0 else 3
    perihelion, qr_index = _first_in_range(tokens, qr_start, 9, 0.0, 10.0, low_inclusive=False)
    in_start = qr_index + 1 if qr_index >= 0 else 4
    inclination, _ = _first_in_range(tokens, in_start, 10, 0.0, 180.0)
    sun_distance, _ = _first_in_range(tokens, 10, 15, 0.0, 100.0, low_inclusive=False, high_inclusive=False)

    return {
        "eccentricity": eccentricity,
        "perihelion_distance_au": perihelion,
        "inclination_deg": inclination,
        "distance_from_sun_au": sun_distance,
    }


def heliocentric_distance(perihelion_au: Optional[float], eccentricity: Optional[float],
                          true_anomaly_deg: Optional[float]) -> Optional[float]:
    """Conic radius r = q(1+e) / (1 + e cos v)."""
    if perihelion_au is None or eccentricity is None or true_anomaly_deg is None:
        return None
    denominator = 1.0 + eccentricity * math.cos(math.radians(true_anomaly_deg))
    if denominator <= 0:
        return None
    return perihelion_au * (1.0 + eccentricity) / denominator


def parse_elements(text: str) -> EphemerisRecord:
    """Osculating elements from an ELEMENTS table."""
    header, lines = _split_block(text)
    if not lines:
        raise MalformedResponseError("Malformed ephemeris: no data lines between sentinels", service="horizons")

    columns = _column_header(header)
    record = _first_record(lines)
    labelled = {label: None for label in _ELEMENT_LABELS}
    for line in record[1:]:
        for label in _ELEMENT_LABELS:
            if labelled[label] is None:
                labelled[label] = _label_value(line, label)

    true_anomaly: Optional[float] = None
    listed_sun_distance: Optional[float] = None
    if labelled["EC"] is not None or labelled["QR"] is not None:
        elements = {
            "eccentricity": labelled["EC"],
            "perihelion_distance_au": labelled["QR"],
            "inclination_deg": labelled["IN"],
        }
        true_anomaly = labelled["TA"]
    elif "EC" in columns:
        row = [cell.strip() for cell in lines[0].split(",")]
        cells = dict(zip(columns, row))
        elements = {
            "eccentricity": _to_float(cells.get("EC", "")),
            "perihelion_distance_au": _to_float(cells.get("QR", "")),
            "inclination_deg": _to_float(cells.get("IN", "")),
        }
        true_anomaly = _to_float(cells.get("TA", ""))
    else:
        elements = heuristic_elements(lines[0])
        listed_sun_distance = elements.pop("distance_from_sun_au")

    center = _center_body(header)
    sun_distance = None
    if center in (None, SUN_ID):
        sun_distance = heliocentric_distance(
            elements["perihelion_distance_au"], elements["eccentricity"], true_anomaly
        )
    if sun_distance is None:
        sun_distance = listed_sun_distance

    return EphemerisRecord(
        timestamp_utc=parse_timestamp(record[0]),
        distance_from_sun_au=sun_distance,
        **elements,
    )


def _sexagesimal_ra(text: str) -> Tuple[Optional[float], str]:
    match = _SEXAGESIMAL_RA_RE.match(text)
    if not match:
        return None, text
    hours, minutes, seconds = (float(g) for g in match.groups())
    if hours >= 24 or minutes >= 60 or seconds >= 60:
        return None, text
    return 15.0 * (hours + minutes / 60.0 + seconds / 3600.0), text[match.end():]


def _sexagesimal_dec(text: str) -> Tuple[Optional[float], str]:
    match = _SEXAGESIMAL_DEC_RE.match(text)
    if not match:
        return None, text
    sign = -1.0 if match.group(1) == "-" else 1.0
    degrees, minutes, seconds = (float(g) for g in match.groups()[1:])
    if degrees > 90 or minutes >= 60 or seconds >= 60:
        return None, text
    return sign * (degrees + minutes / 60.0 + seconds / 3600.0), text[match.end():]


def _decimal_places(token: str) -> int:
    mantissa = token.lower().split("e")[0]
    return len(mantissa.split(".")[1]) if "." in mantissa else 0


def parse_observer(text: str) -> EphemerisRecord:
    """Sky position, brightness and range from an OBSERVER table."""
    header, lines = _split_block(text)
    if not lines:
        raise MalformedResponseError("Malformed ephemeris: no data lines between sentinels", service="horizons")

    line = lines[0]
    timestamp = parse_timestamp(line)

    date_match = _OBSERVER_ROW_RE.match(line)
    rest = line[date_match.end():] if date_match else line
    # Optional seconds, then solar/lunar presence flags.
    rest = re.sub(r"^(?::\d{2}(?:\.\d+)?)?\s*[*CNAm r]{0,3}(?=\s)", "", rest)

    right_ascension, rest = _sexagesimal_ra(rest)
    declination, rest = _sexagesimal_dec(rest)
    tokens = rest.split()

    if right_ascension is None and len(tokens) >= 2:
        ra, dec = _to_float(tokens[0]), _to_float(tokens[1])
        if ra is not None and dec is not None and 0 <= ra < 360 and -90 <= dec <= 90:
            right_ascension, declination = ra, dec
            tokens = tokens[2:]

    columns = _observer_header(header)
    magnitude: Optional[float] = None
    earth_distance: Optional[float] = None
    sun_distance: Optional[float] = None

    named = columns[2:] if len(columns) > 2 else []
    if named and len(named) == len(tokens):
        cells = dict(zip(named, tokens))
        magnitude = _to_float(cells.get("APmag", cells.get("T-mag", "")))
        earth_distance = _to_float(cells.get("delta", ""))
        sun_distance = _to_float(cells.get("r", ""))
    else:
        # Unlabelled: magnitude is the first small value, range the first
        # high-precision positive value after it.
        magnitude, mag_index = _first_in_range(tokens, 0, len(tokens), 0.0, 30.0)
        for token in tokens[mag_index + 1:]:
            value = _to_float(token)
            if value is not None and 0 < value <= 100 and _decimal_places(token) >= 6:
                earth_distance = value
                break

    return EphemerisRecord(
        timestamp_utc=timestamp,
        right_ascension=right_ascension,
        declination=declination,
        distance_from_earth_au=earth_distance,
        distance_from_sun_au=sun_distance,
        apparent_magnitude=magnitude,
    )


def _declared_table(header: str) -> Optional[EphemerisTable]:
    """Table type named by an ``EPHEM_TYPE`` or ``Table format`` header line."""
    match = _TABLE_DECLARATION_RE.search(header)
    if not match:
        return None
    word = match.group(1).upper()
    if len(word) < 6:
        return None
    for table in EphemerisTable:
        # VECTOR / VECTORS, ELEMENT / ELEMENTS, OBSERVE / OBSERVER
        if table.value.startswith(word[:6]):
            return table
    return None


def detect_table(text: str) -> EphemerisTable:
    """Best guess at which EPHEM_TYPE produced ``text``.

    A table type declared in the header wins; otherwise the column header
    and the shape of the first rows decide.
    """
    header, lines = _split_block(text)
    declared = _declared_table(header)
    if declared is not None:
        return declared

    columns = _column_header(header)
    first = "\n".join(lines[:4])

    if ("X" in columns and "VX" in columns) or re.search(r"(?<![A-Za-z])VX\s*=", first):
        return EphemerisTable.VECTORS
    if lines and _OBSERVER_ROW_RE.match(lines[0]):
        return EphemerisTable.OBSERVER
    return EphemerisTable.ELEMENTS


_PARSERS = {
    EphemerisTable.VECTORS: parse_vectors,
    EphemerisTable.ELEMENTS: parse_elements,
    EphemerisTable.OBSERVER: parse_observer,
}


def parse_ephemeris(text: str, table: Optional[EphemerisTable] = None) -> EphemerisRecord:
    """Decode the most recent row of a Horizons ephemeris.

    Missing sentinels or an empty data block raise MalformedResponseError.
    Unparseable fields degrade to None.
    """
    extract_ephemeris_block(text)
    if table is None:
        table = detect_table(text)
    return _PARSERS[EphemerisTable(table)](text)


def merge_records(primary: EphemerisRecord, secondary: Optional[EphemerisRecord]) -> EphemerisRecord:
    """Fill the None fields of ``primary`` from ``secondary``."""
    if secondary is None:
        return primary
    values = {}
    for name in EphemerisRecord.__dataclass_fields__:
        value = getattr(primary, name)
        values[name] = value if value is not None else getattr(secondary, name)
    return EphemerisRecord(**values)
