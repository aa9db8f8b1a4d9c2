"""
Hobo - manage local virtual machines cloned from boxcar templates.

This package fetches verified boxcar archives, clones instances from them,
bootstraps the guest over ssh and exposes start/stop/inspect operations.
"""

from .main import main

__version__ = "1.0.0"
__all__ = ["main"]
