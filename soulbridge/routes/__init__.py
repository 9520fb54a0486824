"""
SoulBridge API Routes Package
Provides identity, verification, bridge, credential and admin endpoints.
"""

from soulbridge.routes import admin, bridge, credentials, identity, verification

__all__ = ['admin', 'bridge', 'credentials', 'identity', 'verification']
