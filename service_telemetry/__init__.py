"""
Space Telemetry Gateway service.
"""
