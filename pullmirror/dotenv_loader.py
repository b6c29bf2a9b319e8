# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Idempotent .env loading for the mirror service.

Environment variables are read from two locations (in order):

1. ``~/.config/pull-mirror/.env`` (XDG config directory)
2. ``.env`` in the current working directory

Variables set by the first file are **not** overwritten by the second
(``python-dotenv`` respects existing env vars by default), and neither
overrides variables already present in the process environment.
"""

import logging
from pathlib import Path

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

_dotenv_loaded = False


def load_dotenv_once() -> None:
    """Load .env files once, if not already loaded."""
    global _dotenv_loaded
    if _dotenv_loaded:
        return

    from pullmirror.config import get_dotenv_path

    xdg_env = get_dotenv_path()
    if xdg_env.exists():
        load_dotenv(xdg_env)
        logger.debug("Loaded .env from %s", xdg_env)

    cwd_env = Path.cwd() / ".env"
    if cwd_env.exists():
        load_dotenv(cwd_env)
        logger.debug("Loaded .env from %s", cwd_env)

    _dotenv_loaded = True


def reset_dotenv_state() -> None:
    """Reset the dotenv loaded state. For testing only."""
    global _dotenv_loaded
    _dotenv_loaded = False
