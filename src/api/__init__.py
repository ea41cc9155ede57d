"""Parcel Tracker — HTTP API."""

from src.api.server import create_app

__all__ = ["create_app"]
