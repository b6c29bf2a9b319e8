# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Command-line entry point for the pull mirror service.

Signals:

- ``SIGHUP``: reload the mirrors file and reconfigure.
- ``SIGUSR1``: toggle debug logging.
- ``SIGUSR2``: mirror every configured repository now.
- ``SIGINT``/``SIGTERM``: shut down gracefully.
"""

import argparse
import logging
import os
import signal
import threading
from pathlib import Path

from pullmirror import __version__
from pullmirror.config import (
    ConfigError,
    ServerOptions,
    get_config_path,
    load_configuration,
    parse_listen_address,
)
from pullmirror.dotenv_loader import load_dotenv_once
from pullmirror.logging import configure_logging, toggle_debug_logging
from pullmirror.manager import ConfigureError
from pullmirror.server import MirrorServer
from pullmirror.webhooks import WebhookClient, create_client
from pullmirror.webhooks.github import DEFAULT_GITHUB_URL
from pullmirror.webhooks.gitlab import DEFAULT_GITLAB_URL


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser.

    Environment defaults are read when the parser is built, so ``.env``
    files must be loaded first.
    """
    parser = argparse.ArgumentParser(
        description="Git Pull Mirror Service",
        epilog=(
            "Mirrors origin repositories into targets whenever the origin "
            "provider reports a push."
        ),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--listen-address",
        default=":9092",
        metavar="HOST:PORT",
        help="Address in which to listen for webhooks (default: :9092)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help=(
            "Path to the mirrors file"
            " (default: ~/.config/pull-mirror/mirrors.yaml)"
        ),
    )
    parser.add_argument(
        "--callback-url",
        default=os.environ.get("CALLBACK_URL", ""),
        help=(
            "Callback URL to report to the provider for webhooks, must "
            "include scheme, host and path (env: CALLBACK_URL)"
        ),
    )
    parser.add_argument(
        "--webhooks-provider",
        choices=("github", "gitlab"),
        default="github",
        help="Provider hosting the origin repositories (default: github)",
    )
    parser.add_argument(
        "--github-user",
        default=os.environ.get("GITHUB_USER", ""),
        help="GitHub username used to register webhooks (env: GITHUB_USER)",
    )
    parser.add_argument(
        "--github-token",
        default=os.environ.get("GITHUB_TOKEN", ""),
        help="GitHub token used to register webhooks (env: GITHUB_TOKEN)",
    )
    parser.add_argument(
        "--github-url",
        default=DEFAULT_GITHUB_URL,
        help=(
            "GitHub hub URL to register webhooks"
            f" (default: {DEFAULT_GITHUB_URL})"
        ),
    )
    parser.add_argument(
        "--gitlab-token",
        default=os.environ.get("GITLAB_TOKEN", ""),
        help="GitLab token used to register webhooks (env: GITLAB_TOKEN)",
    )
    parser.add_argument(
        "--gitlab-url",
        default=DEFAULT_GITLAB_URL,
        help=f"GitLab API URL (default: {DEFAULT_GITLAB_URL})",
    )
    parser.add_argument(
        "--repositories-path",
        type=Path,
        default=Path("."),
        metavar="PATH",
        help="Local path in which to store cloned repositories",
    )
    parser.add_argument(
        "--skip-webhooks-registration",
        action="store_true",
        help="Don't register webhooks",
    )
    parser.add_argument(
        "--sshkey",
        default=os.environ.get("SSH_KEY", ""),
        metavar="PATH",
        help="SSH key used to authenticate to remotes (env: SSH_KEY)",
    )
    parser.add_argument(
        "--git-timeout-seconds",
        type=int,
        default=60,
        help="Git operations timeout in seconds (default: 60)",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=4,
        help="Number of concurrent mirror tasks (default: 4)",
    )
    parser.add_argument(
        "--metrics-path",
        default="/metrics",
        help="Path serving Prometheus metrics (default: /metrics)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--dryrun",
        action="store_true",
        help="Load and validate the configuration, then exit",
    )
    return parser


def _create_webhook_client(args: argparse.Namespace) -> WebhookClient:
    """Create the webhook client selected on the command line.

    Raises:
        ConfigError: If provider options are missing or invalid.
    """
    if args.webhooks_provider == "gitlab":
        user = ""
        token = args.gitlab_token
        api_url = args.gitlab_url
    else:
        user = args.github_user
        token = args.github_token
        api_url = args.github_url
    return create_client(
        args.webhooks_provider,
        callback_url=args.callback_url,
        user=user,
        token=token,
        api_url=api_url,
        require_credentials=not args.skip_webhooks_registration,
    )


def _reload(server: MirrorServer, config_path: Path) -> None:
    """Reload the mirrors file and reconfigure the server."""
    logger.info("reloading the configuration")
    try:
        config = load_configuration(config_path)
    except ConfigError as e:
        logger.error("failed to load configuration: %s", e)
        return
    try:
        server.configure(config)
    except ConfigureError as e:
        logger.error("failed to apply configuration: %s", e)


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        argv: Command-line arguments. If None, uses sys.argv[1:].

    Returns:
        Exit code (0=success, 1=config error, 2=startup, 3=runtime error).
    """
    load_dotenv_once()
    args = build_parser().parse_args(argv)

    configure_logging(
        level=logging.DEBUG if args.debug else logging.INFO,
        add_secret_filter=True,
    )

    logger.info("Pull mirror service starting...")

    config_path = args.config or get_config_path()
    try:
        host, port = parse_listen_address(args.listen_address)
        options = ServerOptions(
            repositories_path=args.repositories_path,
            git_timeout_seconds=args.git_timeout_seconds,
            ssh_private_key=Path(args.sshkey) if args.sshkey else None,
            skip_webhooks_registration=args.skip_webhooks_registration,
            concurrency=args.concurrency,
            metrics_path=args.metrics_path,
        )
        config = load_configuration(config_path)
        webhook_client = _create_webhook_client(args)
    except ConfigError as e:
        logger.critical("Configuration error: %s", e)
        return 1

    if args.dryrun:
        logger.info(
            "Dry run: configuration with %d repositories is valid",
            len(config.repositories),
        )
        return 0

    try:
        server = MirrorServer(options, webhook_client)
    except Exception as e:
        logger.exception("Failed to initialize server: %s", e)
        return 2

    stop_requested = threading.Event()

    def shutdown_handler(signum: int, frame: object) -> None:
        """Handle shutdown signals."""
        logger.info("Received signal %d, initiating shutdown...", signum)
        stop_requested.set()

    def reload_handler(signum: int, frame: object) -> None:
        """Reload the configuration off the signal-handling thread."""
        threading.Thread(
            target=_reload,
            args=(server, config_path),
            daemon=True,
            name="Reload",
        ).start()

    def debug_handler(signum: int, frame: object) -> None:
        """Toggle debug logging."""
        level = toggle_debug_logging()
        logger.info("Log level set to %s", logging.getLevelName(level))

    def update_all_handler(signum: int, frame: object) -> None:
        """Mirror every repository, without blocking signal handling."""
        logger.info("Received USR2, forcing an update in all repositories")
        threading.Thread(
            target=server.update_all, daemon=True, name="UpdateAll"
        ).start()

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGHUP, reload_handler)
    signal.signal(signal.SIGUSR1, debug_handler)
    signal.signal(signal.SIGUSR2, update_all_handler)

    try:
        server.run(host, port, config=config)
    except OSError as e:
        logger.critical(
            "Failed to start server on %s: %s", args.listen_address, e
        )
        server.shutdown(timeout=0)
        return 2

    try:
        stop_requested.wait()
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception("Fatal runtime error: %s", e)
        return 3
    finally:
        server.shutdown()
