"""Parcel Tracker — Status Providers.

Ranked sources of tracking status. Components:
  - TrackingApiProvider: remote tracking JSON API (primary)
  - SpxPageProvider: raw carrier tracking page scrape
  - RenderedPageProvider: carrier page via a headless render service
  - ProviderChain: ranked fallback with timeouts and circuit breakers
"""

from src.providers.chain import ProviderChain, build_provider_chain
from src.providers.spx_page import RenderedPageProvider, SpxPageProvider
from src.providers.tracking_api import TrackingApiProvider

__all__ = [
    "ProviderChain",
    "build_provider_chain",
    "TrackingApiProvider",
    "SpxPageProvider",
    "RenderedPageProvider",
]
