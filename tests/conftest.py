"""Shared pytest fixtures for Vaporstudio tests."""

from __future__ import annotations

import base64
import shutil
import tempfile
from collections.abc import Generator
from io import BytesIO
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from vaporstudio.api.main import create_app
from vaporstudio.core.composition import DEFAULT_BACKGROUND, CompositionConfig
from vaporstudio.core.config import RateLimitSetting, VaporstudioConfig
from vaporstudio.core.errors import ComposerError
from vaporstudio.core.workspace import TempWorkspace

CANVAS = (460, 595)


def make_png(size: tuple[int, int] = (100, 100), color=(255, 0, 255, 255)) -> bytes:
    """Return the bytes of a solid RGBA PNG."""
    buffer = BytesIO()
    Image.new("RGBA", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeComposer:
    """Scriptable stand-in for the vaporwaver compositor.

    Each call pops the next action from *actions*; once exhausted every call
    succeeds.  Actions:

    - ``"ok"``: write a 460x595 PNG to the requested output path.
    - ``"raise"``: raise :class:`ComposerError`.
    - ``"misplace"``: write the PNG to ``char_<n>_output.png`` instead.
    - ``"silent"``: return without writing anything.
    - ``"clobber"``: corrupt the input file, then raise.

    Attributes:
        calls: Every config received, in order.
    """

    def __init__(self, actions: list[str] | None = None) -> None:
        self.actions = list(actions or [])
        self.calls: list[CompositionConfig] = []

    def compose(self, config: CompositionConfig) -> None:
        self.calls.append(config)
        action = self.actions.pop(0) if self.actions else "ok"
        output = Path(config.output_path)

        if action == "ok":
            output.write_bytes(make_png(CANVAS, (0, 255, 255, 255)))
        elif action == "misplace":
            target = output.parent / f"char_{len(self.calls)}_output.png"
            target.write_bytes(make_png(CANVAS, (255, 255, 0, 255)))
        elif action == "silent":
            return
        elif action == "clobber":
            Path(config.input_path).write_bytes(b"garbage")
            raise ComposerError("compositor crashed mid-write")
        else:
            raise ComposerError(f"simulated failure on call {len(self.calls)}")


class AssetAwareComposer(FakeComposer):
    """Fails, like vaporwaver does, when the background asset does not exist."""

    def __init__(self, backgrounds_dir: Path) -> None:
        super().__init__()
        self.backgrounds_dir = backgrounds_dir

    def compose(self, config: CompositionConfig) -> None:
        if not config.character_only and config.background != DEFAULT_BACKGROUND:
            if not (self.backgrounds_dir / f"{config.background}.png").is_file():
                self.calls.append(config)
                raise ComposerError(f"background '{config.background}' not found")
        super().compose(config)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> VaporstudioConfig:
    """Create a test configuration with temporary directories.

    Cleanup runs without delay so tests can check the filesystem as soon as
    the app has drained its pending releases.
    """
    return VaporstudioConfig(
        _env_file=None,
        temp_root=temp_dir / "tmp",
        backgrounds_dir=temp_dir / "public" / "backgrounds",
        overlays_dir=temp_dir / "public" / "miscs",
        cleanup_delay_seconds=0.0,
        stage_timeout_seconds=5.0,
        rate_limits={
            "/api/assets": RateLimitSetting(max_requests=120, window_seconds=60),
            "/api/compose": RateLimitSetting(max_requests=20, window_seconds=60),
            "/api/preview-effects": RateLimitSetting(max_requests=30, window_seconds=60),
        },
    )


@pytest.fixture
def workspaces(test_config: VaporstudioConfig) -> TempWorkspace:
    return TempWorkspace(test_config.temp_root)


@pytest.fixture
def character_png() -> bytes:
    """A valid 100x100 character PNG."""
    return make_png()


@pytest.fixture
def character_b64(character_png: bytes) -> str:
    return base64.b64encode(character_png).decode("ascii")


@pytest.fixture
def fake_composer() -> FakeComposer:
    return FakeComposer()


@pytest.fixture
def test_client(test_config: VaporstudioConfig, fake_composer: FakeComposer) -> Generator[TestClient, None, None]:
    """TestClient for an app wired to the fake compositor.

    Entering the client runs the lifespan, so leaving it drains every
    scheduled workspace cleanup.
    """
    app = create_app(test_config, composer=fake_composer)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def png_factory():
    """Expose :func:`make_png` to tests."""
    return make_png


@pytest.fixture
def composer_factory():
    """Build a :class:`FakeComposer` with a scripted list of actions."""
    return FakeComposer


@pytest.fixture
def asset_aware_composer(test_config: VaporstudioConfig) -> AssetAwareComposer:
    return AssetAwareComposer(test_config.backgrounds_dir)
