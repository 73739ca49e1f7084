"""
Models package for the RDPForge persistence layer.
"""

from .core import *

__all__ = [
    "AuthType",
    "InstallRecord",
    "InstallStatus",
    "User",
    "WindowsVersion",
    "utcnow",
]
