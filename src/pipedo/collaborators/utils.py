"""Environment helpers for collaborator and plan processes."""

from __future__ import annotations

import os
from typing import Mapping

_SESSION_VARS = {
    "PIPEDO_APP",
    "PIPEDO_RUN_DIR",
    "PIPEDO_RUN_ID",
    "PIPEDO_PWD",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the current environment without variables left over from an enclosing session."""

    env = dict(os.environ)
    for key in _SESSION_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def format_environment(env: Mapping[str, str]) -> str:
    """Render an environment as sorted ``KEY=VALUE`` lines."""

    return "".join(f"{key}={value}\n" for key, value in sorted(env.items()))
