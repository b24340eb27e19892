"""Vaporstudio - vaporwave image compositing API."""

__version__ = "0.1.0"

from vaporstudio.core.config import VaporstudioConfig, config

__all__ = [
    "VaporstudioConfig",
    "config",
]
