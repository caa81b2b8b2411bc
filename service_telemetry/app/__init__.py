"""
Telemetry Gateway Service package.

The gateway fronts every call the dashboard makes to third-party
scientific APIs, enforcing:
- Rate budgets: one FIFO request scheduler per upstream service
- Circuit-breaking and retries for resilient upstream calls
- Stale-while-revalidate response caching with request coalescing
- Typed decoding of provider payloads, including Horizons ephemerides

Structure:
- app.main: FastAPI app, routes, and wiring.
- app.gateway: Per-service client registry exposed to callers.
- app.adapters: Gateway clients, one per upstream API family.
- app.caching: Response cache.
- app.ratelimit: Request scheduler and rate budgets.
- app.domain: Typed records and the ephemeris parser.
"""
