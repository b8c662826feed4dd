"""
HTTP surface: event ingestion, operator routes and health
"""

from src.api.app import create_app

__all__ = ["create_app"]
