"""Configuration management for the Vaporstudio compositing API.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the VAPORSTUDIO_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (VAPORSTUDIO_* prefix)
2. .env file in the project root
3. Default values defined in VaporstudioConfig

Example .env file:
    VAPORSTUDIO_TEMP_ROOT=/var/tmp/vaporstudio
    VAPORSTUDIO_VAPORWAVER_SCRIPT=/opt/vaporwaver/vaporwaver.py
    VAPORSTUDIO_CLEANUP_DELAY_SECONDS=0.5
    VAPORSTUDIO_RATE_LIMITS={"/api/compose": {"max_requests": 10, "window_seconds": 60}}

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
The FastAPI app factory uses it unless an explicit instance is injected, which
is how the test-suite points the app at temporary directories.

Usage Example
-------------
    from vaporstudio.core.config import config

    print(config.temp_root)
    print(config.rate_limits["/api/compose"].max_requests)

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- temp_root: Parent of the per-request workspaces
- backgrounds_dir / overlays_dir: Asset folders listed by ``GET /api/assets``

Rate Limits
-----------
``rate_limits`` maps a route prefix to ``{"max_requests": N, "window_seconds": W}``.
Routes without an entry fall back to ``default_rate_limit``.  The defaults
allow far more asset listings than compositions because a compose call is
the expensive one.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RateLimitSetting(BaseModel):
    """Per-route fixed-window limit as read from the environment."""

    max_requests: int = Field(ge=1)
    window_seconds: int = Field(ge=1)


def _default_rate_limits() -> dict[str, RateLimitSetting]:
    return {
        "/api/assets": RateLimitSetting(max_requests=120, window_seconds=60),
        "/api/compose": RateLimitSetting(max_requests=20, window_seconds=60),
        "/api/preview-effects": RateLimitSetting(max_requests=30, window_seconds=60),
    }


class VaporstudioConfig(BaseSettings):
    """Main configuration for the Vaporstudio API.

    Values are loaded from environment variables with the VAPORSTUDIO_ prefix,
    with fallback to defaults defined here.

    Attributes
    ----------
    Composer Settings:
        vaporwaver_script : Path | None
            Path to ``vaporwaver.py``.  When unset the CLI composer looks it up
            on ``PATH`` as ``vaporwaver``.
        python_executable : str
            Interpreter used to run the script
        default_background : str
            Background forced by the second fallback stage
        stage_timeout_seconds : float
            Upper bound for a single composer invocation
        stage_grace_seconds : float
            Extra time a timed-out stage is given to stop before the next
            stage may start

    Workspace Settings:
        temp_root : Path
            Parent directory of the per-request workspaces
        cleanup_delay_seconds : float
            Delay before a finished workspace is deleted
        stale_workspace_seconds : int
            Age after which leftover workspaces are swept at startup

    Input Settings:
        max_upload_bytes : int
            Ceiling on the decoded character image size

    Assets:
        backgrounds_dir / overlays_dir : Path
            Directories enumerated by ``GET /api/assets``

    Rate Limiting:
        rate_limits : dict[str, RateLimitSetting]
            Route prefix to limit
        default_rate_limit : RateLimitSetting
            Limit for unconfigured routes
        rate_limit_purge_interval_seconds : int
            How often stale windows are dropped

    Server:
        server_host / server_port / log_level

    Notes
    -----
    - All directories are created automatically if they don't exist
    - To modify config, set environment variables and restart the application
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="VAPORSTUDIO_",
        case_sensitive=False,
    )

    # Composer
    vaporwaver_script: Path | None = Field(
        default=None,
        description="Path to vaporwaver.py (None = use the `vaporwaver` executable on PATH)",
    )
    python_executable: str = Field(
        default="python3",
        description="Interpreter used to run vaporwaver.py",
    )
    default_background: str = Field(
        default="default",
        description="Background used by the default-background fallback stage",
    )
    stage_timeout_seconds: float = Field(
        default=60.0,
        description="Timeout applied to each composer invocation",
        gt=0,
    )
    stage_grace_seconds: float = Field(
        default=5.0,
        description="Margin between the composer timeout and the orchestrator stage bound",
        gt=0,
    )

    # Canvas produced by the composer (matches the UI preview)
    canvas_width: int = Field(default=460, ge=1)
    canvas_height: int = Field(default=595, ge=1)

    # Workspaces
    temp_root: Path = Field(
        default=Path("tmp"),
        description="Parent directory for per-request workspaces",
    )
    cleanup_delay_seconds: float = Field(
        default=0.5,
        description="Delay before a workspace is deleted after its request",
        ge=0,
    )
    stale_workspace_seconds: int = Field(
        default=3600,
        description="Workspaces older than this are swept at startup",
        ge=0,
    )

    # Input
    max_upload_bytes: int = Field(
        default=5 * 1024 * 1024,
        description="Maximum decoded size of the character image",
        ge=1,
    )

    # Assets
    backgrounds_dir: Path = Field(
        default=Path("public/backgrounds"),
        description="Directory of background PNGs",
    )
    overlays_dir: Path = Field(
        default=Path("public/miscs"),
        description="Directory of decorative overlay PNGs",
    )

    # Rate limiting
    rate_limits: dict[str, RateLimitSetting] = Field(default_factory=_default_rate_limits)
    default_rate_limit: RateLimitSetting = Field(
        default_factory=lambda: RateLimitSetting(max_requests=100, window_seconds=60)
    )
    rate_limit_purge_interval_seconds: int = Field(default=600, ge=1)

    # Server
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address",
    )
    server_port: int = Field(
        default=3000,
        description="Server port",
        ge=1024,
        le=65535,
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.temp_root.mkdir(parents=True, exist_ok=True)
        self.backgrounds_dir.mkdir(parents=True, exist_ok=True)
        self.overlays_dir.mkdir(parents=True, exist_ok=True)


# Global configuration instance
config = VaporstudioConfig()
