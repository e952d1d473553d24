"""Locate the agentpack home directory and the content store beneath it."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

HOME_ENV_VAR = "AGENTPACK_HOME"


def _is_windows() -> bool:
    """Return True when running on Windows."""
    return os.name == "nt"


def get_agentpack_home(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Return the user-global agentpack directory.

    Resolution order:
    1. AGENTPACK_HOME in *environ* (all platforms)
    2. ~/.agentpack/ on macOS/Linux
    3. %LOCALAPPDATA%\\agentpack\\ on Windows (via platformdirs)

    Args:
        environ: Environment mapping to consult. Defaults to ``os.environ``;
            library callers thread their own mapping through.
    """
    env = os.environ if environ is None else environ
    if env_home := env.get(HOME_ENV_VAR):
        return Path(env_home)

    if _is_windows():
        from platformdirs import user_data_dir

        return Path(user_data_dir("agentpack"))

    return Path.home() / ".agentpack"


def get_store_dir(home: Path) -> Path:
    """Return the content store root under *home*."""
    return home / "store"


def get_user_config_path(home: Path) -> Path:
    return home / "config.yaml"


__all__ = ["HOME_ENV_VAR", "get_agentpack_home", "get_store_dir", "get_user_config_path"]
