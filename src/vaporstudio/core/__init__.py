"""Core request lifecycle for Vaporstudio.

- **config**: Pydantic Settings configuration (``VAPORSTUDIO_`` prefix)
- **workspace**: Per-request temporary directories
- **rate_limiter**: Fixed-window limiter keyed by client and route
- **composition**: Composition parameters and input coercion
- **composer**: Boundary to the external vaporwaver compositor
- **orchestrator**: Fallback ladder and output recovery
- **cleanup**: Deferred workspace deletion
- **errors**: Exception hierarchy
"""

from vaporstudio.core.config import VaporstudioConfig, config

__all__ = [
    "VaporstudioConfig",
    "config",
]
