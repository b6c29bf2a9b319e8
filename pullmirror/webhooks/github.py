# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""GitHub webhook client.

Webhooks are registered through GitHub's PubSubHubbub endpoint
(``https://api.github.com/hub``): a ``subscribe`` request for the
repository's ``events/push`` topic pointing at our callback URL.  An
existing subscription is refreshed with ``PATCH``; ``POST`` creates a new
one when the hub answers 404.

GitHub delivers hub notifications as a url-encoded form whose ``payload``
field holds the JSON push event.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

import httpx

from pullmirror.config import ConfigError
from pullmirror.giturl import GitURL
from pullmirror.logging import SecretFilter
from pullmirror.webhooks import (
    DEFAULT_TIMEOUT_SECONDS,
    HookPayload,
    PayloadError,
    WebhookError,
    validate_callback_url,
)


logger = logging.getLogger(__name__)

DEFAULT_GITHUB_URL = "https://api.github.com/hub"

_SUCCESS_STATUSES = frozenset({200, 201, 202, 204})


@dataclass(frozen=True)
class GitHubOptions:
    """Settings for the GitHub client.

    Attributes:
        callback_url: Public URL GitHub will call.
        user: GitHub user owning the token.
        token: Personal access token with ``admin:repo_hook`` scope.
        github_url: Hub endpoint.
        timeout_seconds: HTTP timeout for hub calls.
    """

    callback_url: str
    user: str = ""
    token: str = field(default="", repr=False)
    github_url: str = DEFAULT_GITHUB_URL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


class GitHubClient:
    """Registers hub subscriptions and parses GitHub push payloads."""

    def __init__(
        self, options: GitHubOptions, require_credentials: bool = True
    ) -> None:
        """Initialize the client.

        Args:
            options: Client settings.
            require_credentials: Fail fast when user, token or hub URL are
                missing.

        Raises:
            ConfigError: If a required option is missing.
        """
        validate_callback_url(options.callback_url)
        if require_credentials:
            if not options.user.strip():
                raise ConfigError(
                    "GitHub username is necessary for registering webhooks"
                )
            if not options.token.strip():
                raise ConfigError(
                    "GitHub token is necessary for registering webhooks"
                )
            if not options.github_url.strip():
                raise ConfigError(
                    "GitHub url is necessary for registering webhooks"
                )
        SecretFilter.register_secret(options.token)
        self.options = options

    def get_callback_url(self) -> str:
        """Return the public URL that receives webhook calls."""
        return self.options.callback_url

    def register_webhook(self, url: GitURL) -> None:
        """Subscribe the callback URL to push events of ``url``.

        Raises:
            WebhookError: If the hub cannot be reached or rejects the
                subscription.
        """
        logger.debug("registering webhook for %s", url)

        form = {
            "hub.mode": "subscribe",
            "hub.topic": f"https://{url}/events/push",
            "hub.callback": self.options.callback_url,
        }

        try:
            with httpx.Client(
                timeout=self.options.timeout_seconds,
                auth=(self.options.user, self.options.token),
            ) as client:
                response = client.patch(self.options.github_url, data=form)
                if response.status_code == 404:
                    response = client.post(self.options.github_url, data=form)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise WebhookError(
                f"failed to register webhook for {url}: {e}"
            ) from e

        if response.status_code in _SUCCESS_STATUSES:
            logger.debug("webhook for %s correctly registered", url)
            return

        raise WebhookError(
            f"webhook creation request failed with status "
            f"{response.status_code} {response.reason_phrase}: "
            f"{response.text}"
        )

    def parse_hook_payload(self, payload: str) -> HookPayload:
        """Parse a GitHub push event.

        Raises:
            PayloadError: If the payload is not JSON or lacks
                ``repository.full_name``.
        """
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise PayloadError(f"could not parse hook payload: {e}") from e

        if not isinstance(data, dict):
            raise PayloadError("could not parse hook payload: not an object")

        repository = data.get("repository")
        full_name = (
            repository.get("full_name")
            if isinstance(repository, dict)
            else None
        )
        if not isinstance(full_name, str) or not full_name:
            raise PayloadError("hook payload has no repository.full_name")

        hook = data.get("hook")
        events = hook.get("events") if isinstance(hook, dict) else None
        if not isinstance(events, list):
            events = []
        return HookPayload(
            repository=full_name,
            events=tuple(str(e) for e in events),
        )
