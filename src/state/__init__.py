"""
Session models and object-store persistence.

This package defines the in-memory client session for the game API and the
S3-backed mirror that game data and asset bundles are uploaded to.
"""

from .models import AppVersionInfo, ClientSession

__all__ = ["AppVersionInfo", "ClientSession"]
