"""
METER RAIL - API Module

FastAPI server for meters, usage ingest, tier enforcement, overages and
billing reconciliation.
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
