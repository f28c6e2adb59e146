"""Device layer for connected badges.

This module provides:
- Connection lifecycle and typed commands (DeviceSession)
- Chunked uploads and downloads with progress (TransferEngine)
"""

from .session import DeviceSession
from .transfer import TransferEngine

__all__ = [
    'DeviceSession',
    'TransferEngine',
]
