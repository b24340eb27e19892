"""Boundary to the external vaporwaver compositor.

The compositor is a black box: given a :class:`CompositionConfig` it writes a
PNG, raises on failure, and makes no promise that the file lands at the
requested output path.  The orchestrator only depends on the
:class:`Composer` protocol, which keeps the fallback and recovery logic
testable with fakes that raise, write to the wrong file, or succeed.

:class:`VaporwaverCliComposer` is the production implementation.  It runs
``vaporwaver.py`` (or a ``vaporwaver`` executable on ``PATH``) in a
subprocess with the script's short flags::

    python3 vaporwaver.py -c=<char.png> -o=<out.png> -b=<background> \\
        -m=<misc> -mx=.. -my=.. -ms=.. -mr=.. -cx=.. -cy=.. -cs=.. -cr=.. \\
        -cg=<glitch> -cgs=<seed> -cgd=<gradient> [-crt] [--character-only]
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Protocol, runtime_checkable

from vaporstudio.core.composition import CompositionConfig
from vaporstudio.core.errors import ComposerError

logger = logging.getLogger(__name__)

# Composer argument name -> vaporwaver.py flag.
_VALUE_FLAGS: dict[str, str] = {
    "character_path": "-c",
    "output_path": "-o",
    "background": "-b",
    "overlay": "-m",
    "overlay_x": "-mx",
    "overlay_y": "-my",
    "overlay_scale": "-ms",
    "overlay_rotate": "-mr",
    "character_x": "-cx",
    "character_y": "-cy",
    "character_scale": "-cs",
    "character_rotate": "-cr",
    "glitch": "-cg",
    "glitch_seed": "-cgs",
    "gradient": "-cgd",
}
_SWITCH_FLAGS: dict[str, str] = {
    "crt": "-crt",
    "character_only": "--character-only",
    "overlay_above_character": "--misc-above-character",
}

_STDERR_TAIL = 2000


@runtime_checkable
class Composer(Protocol):
    """Anything that can turn a bound :class:`CompositionConfig` into a PNG."""

    def compose(self, config: CompositionConfig) -> None:
        """Render *config*.  Raise on failure."""
        ...


def _format_value(value: object) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_command_arguments(config: CompositionConfig) -> list[str]:
    """Translate a config into vaporwaver.py command-line flags.

    Args:
        config: A config bound to a workspace.

    Returns:
        The flag list, without the executable.
    """
    args: list[str] = []
    for name, value in config.composer_arguments().items():
        if name in _SWITCH_FLAGS:
            if value:
                args.append(_SWITCH_FLAGS[name])
        else:
            args.append(f"{_VALUE_FLAGS[name]}={_format_value(value)}")
    return args


class VaporwaverCliComposer:
    """Runs vaporwaver as a subprocess.

    Args:
        script: Path to ``vaporwaver.py``.  When ``None`` the ``vaporwaver``
            executable is looked up on ``PATH`` at call time.
        python_executable: Interpreter used to run *script*.
        timeout: Seconds before the subprocess is killed.
    """

    def __init__(
        self,
        script: Path | None = None,
        python_executable: str = "python3",
        timeout: float = 60.0,
    ) -> None:
        self._script = Path(script) if script is not None else None
        self._python = python_executable
        self._timeout = timeout

    def _base_command(self) -> tuple[list[str], Path | None]:
        if self._script is not None:
            if not self._script.is_file():
                raise ComposerError(f"vaporwaver script not found: {self._script}")
            return [self._python, str(self._script)], self._script.parent

        executable = shutil.which("vaporwaver")
        if executable is None:
            raise ComposerError("vaporwaver executable not found on PATH")
        return [executable], None

    def compose(self, config: CompositionConfig) -> None:
        """Run one composition.

        Raises:
            ComposerError: If the compositor cannot be started, exits with a
                non-zero status, or exceeds the timeout.
        """
        base, cwd = self._base_command()
        command = base + build_command_arguments(config)

        env = dict(os.environ)
        # vaporwaver writes its scratch files next to the output.
        env["VAPORWAVER_TMP"] = str(config.output_path.parent)
        if cwd is not None:
            env["PYTHONPATH"] = str(cwd)

        logger.debug("Running compositor: %s", command)
        try:
            completed = subprocess.run(
                command,
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ComposerError(f"compositor timed out after {self._timeout:g}s") from exc
        except OSError as exc:
            raise ComposerError(f"compositor could not be started: {exc}") from exc

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()[-_STDERR_TAIL:]
            raise ComposerError(f"compositor exited with status {completed.returncode}: {stderr}")
