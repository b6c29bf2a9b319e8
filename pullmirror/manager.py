# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Builds the repository registry from a mirrors configuration.

Every configured pair is cloned (or opened), fetched and has its webhook
registered on its own thread.  The resulting registry is all-or-nothing:
a single failing entry discards the whole pass so the server keeps its
previous registry.
"""

import logging
import threading
from collections.abc import Sequence

from pullmirror.config import RepositoryConfig
from pullmirror.git import GitClient, GitError, Repository
from pullmirror.webhooks import WebhookClient, WebhookError


logger = logging.getLogger(__name__)


class ConfigureError(Exception):
    """One or more configured repositories could not be prepared.

    Attributes:
        errors: Per-entry failures, in configuration order.
    """

    def __init__(self, errors: list[Exception]) -> None:
        self.errors = errors
        details = "; ".join(str(e) for e in errors)
        super().__init__(
            f"failed to configure {len(errors)} repositories: {details}"
        )


class RepositoryManager:
    """Prepares local repositories for a set of origin/target pairs."""

    def __init__(
        self,
        git_client: GitClient,
        webhook_client: WebhookClient,
        skip_webhooks_registration: bool = False,
    ) -> None:
        self.git_client = git_client
        self.webhook_client = webhook_client
        self.skip_webhooks_registration = skip_webhooks_registration

    def configure(
        self, entries: Sequence[RepositoryConfig]
    ) -> dict[str, Repository]:
        """Clone or open, fetch, and register every entry.

        Args:
            entries: Configured pairs.

        Returns:
            New registry keyed by origin provider key (``owner/name``).

        Raises:
            ConfigureError: If any entry failed; carries every failure.
        """
        results: list[Repository | Exception | None] = [None] * len(entries)

        def prepare(index: int, entry: RepositoryConfig) -> None:
            try:
                results[index] = self._prepare(entry)
            except Exception as e:
                logger.error("failed to configure %s: %s", entry.origin_url, e)
                results[index] = e

        threads = [
            threading.Thread(
                target=prepare,
                args=(i, entry),
                daemon=True,
                name=f"Configure-{entry.origin_url.to_key()}",
            )
            for i, entry in enumerate(entries)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        registry: dict[str, Repository] = {}
        errors: list[Exception] = []
        for entry, result in zip(entries, results):
            if isinstance(result, Exception):
                errors.append(result)
            elif result is not None:
                registry[entry.origin_url.to_key()] = result

        if errors:
            raise ConfigureError(errors)

        logger.info("configured %d repositories", len(registry))
        return registry

    def _prepare(self, entry: RepositoryConfig) -> Repository:
        """Prepare a single entry.

        Raises:
            GitError: If clone, open or fetch fails.
        """
        repo = self.git_client.clone_or_open(
            entry.origin_url, entry.target_url
        )
        try:
            repo.fetch()
        except GitError as e:
            raise type(e)(
                f"failed to fetch {entry.origin_url} while configuring: {e}"
            ) from e

        if self.skip_webhooks_registration:
            logger.debug(
                "skipping webhook registration for %s", entry.origin_url
            )
            return repo

        try:
            self.webhook_client.register_webhook(entry.origin_url)
        except WebhookError as e:
            logger.error(
                "failed to register webhook for %s: %s", entry.origin_url, e
            )
        return repo
