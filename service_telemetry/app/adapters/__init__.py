"""
Adapters package for the Telemetry Gateway.

One gateway client per upstream API family. Each client encapsulates:

- Base URLs and request shapes
- Rate budget, retry policy and circuit breaker for its upstream
- Error handling that maps to shared errors
- Decoding provider payloads into domain records

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .base_client import GatewayClient
from .dsn_client import DSNClient
from .horizons_client import HorizonsClient
from .nasa_client import NasaApiClient
from .sbdb_client import SmallBodyClient

__all__ = [
    "GatewayClient",
    "DSNClient",
    "HorizonsClient",
    "NasaApiClient",
    "SmallBodyClient",
]
