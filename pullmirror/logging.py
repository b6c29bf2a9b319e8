# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Root logger setup for the mirror service.

The service handles two kinds of secrets: provider API tokens (GitHub,
GitLab) and credentials embedded in HTTP remote URLs.  Git and the
providers echo URLs back in their error output, so every secret is
registered with ``SecretFilter`` as soon as it is parsed and redacted
from whatever reaches the log handler.

Modules log through ``logging.getLogger(__name__)``; only the service
entry point calls ``configure_logging``.  ``toggle_debug_logging`` backs
the SIGUSR1 handler.
"""

import logging
import re
from typing import ClassVar


#: Format of every line written by the service.
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_REDACTED = "[REDACTED]"


class SecretFilter(logging.Filter):
    """Redacts tokens and URL passwords from log records.

    Secrets are shared by every filter instance.  The message and its
    string arguments are rewritten in place; records are never dropped.
    """

    _secrets: ClassVar[set[str]] = set()
    _pattern: ClassVar[re.Pattern[str] | None] = None

    @classmethod
    def register_secret(cls, secret: str) -> None:
        """Start redacting ``secret``.  Empty values are ignored."""
        if not secret or secret in cls._secrets:
            return
        cls._secrets.add(secret)
        # Longest first so a secret containing another is fully hidden
        ordered = sorted(cls._secrets, key=len, reverse=True)
        cls._pattern = re.compile("|".join(re.escape(s) for s in ordered))

    @classmethod
    def clear_secrets(cls) -> None:
        """Forget every registered secret."""
        cls._secrets.clear()
        cls._pattern = None

    @classmethod
    def redact(cls, text: str) -> str:
        """Return ``text`` with every registered secret replaced."""
        if cls._pattern is None:
            return text
        return cls._pattern.sub(_REDACTED, text)

    def filter(self, record: logging.LogRecord) -> bool:
        if self._pattern is None:
            return True
        record.msg = self.redact(str(record.msg))
        if isinstance(record.args, tuple):
            record.args = tuple(
                self.redact(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


def configure_logging(
    level: int = logging.INFO, add_secret_filter: bool = True
) -> None:
    """Send all service logs to stderr at ``level``.

    Handlers installed earlier (by a previous call or by the
    interpreter) are replaced, so calling this twice does not duplicate
    output.

    Args:
        level: Root logger level; ``--debug`` passes DEBUG.
        add_secret_filter: Attach ``SecretFilter`` to the handler.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    if add_secret_filter:
        handler.addFilter(SecretFilter())

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)


def toggle_debug_logging() -> int:
    """Flip the root logger between INFO and DEBUG.

    Returns:
        The newly active level.
    """
    root_logger = logging.getLogger()
    if root_logger.level == logging.DEBUG:
        new_level = logging.INFO
    else:
        new_level = logging.DEBUG
    root_logger.setLevel(new_level)
    return new_level
