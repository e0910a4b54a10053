"""
IMPOUND RAIL - API Module

FastAPI server exposing:
- Fee lookup (staff and public)
- Payment recording (staff entry and gateway callback)
- Receipt issuance and public verification
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
