"""
Telemetry Module
================

Observability for the sync engine.

Components:
- sentry.py: Error tracking for API and worker processes

Usage:
    from adsync.telemetry import init_sentry, capture_exception
"""

from adsync.telemetry.sentry import init_sentry, capture_exception


__all__ = [
    "init_sentry",
    "capture_exception",
]
