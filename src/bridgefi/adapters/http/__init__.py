# src/bridgefi/adapters/http/__init__.py
"""
HTTP Adapter - FastAPI Surface of the Settlement Core

``create_app`` is imported from ``bridgefi.adapters.http.api`` directly so
that importing the schemas does not pull in the application wiring.
"""
