# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Webhook provider protocol and payload types.

Defines the interface between the provider-agnostic mirror server and
provider-specific clients (GitHub, GitLab).  The server only depends on
``WebhookClient``; the concrete client is selected once at startup.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlsplit

from pullmirror.config import ConfigError
from pullmirror.giturl import GitURL


#: HTTP timeout for provider API calls, in seconds.
DEFAULT_TIMEOUT_SECONDS = 30


class WebhookError(Exception):
    """Registering a webhook with the provider failed."""


class PayloadError(ValueError):
    """A webhook payload could not be turned into a repository name."""


@dataclass(frozen=True)
class HookPayload:
    """Provider-agnostic push notification.

    Attributes:
        repository: Provider key of the pushed repository
            (``owner/name``), matching ``GitURL.to_key()``.
        events: Event names carried by the payload, when present.
    """

    repository: str
    events: tuple[str, ...] = ()


class WebhookClient(Protocol):
    """Capabilities the mirror server needs from a webhook provider."""

    def register_webhook(self, url: GitURL) -> None:
        """Subscribe the callback URL to push events of ``url``.

        Raises:
            WebhookError: If the provider rejects the registration.
        """
        ...

    def parse_hook_payload(self, payload: str) -> HookPayload:
        """Parse a raw ``payload`` form value.

        Raises:
            PayloadError: If the payload is malformed.
        """
        ...

    def get_callback_url(self) -> str:
        """Return the public URL that receives webhook calls."""
        ...


def validate_callback_url(callback_url: str) -> str:
    """Check that a callback URL has a scheme, host and path.

    Returns:
        The callback URL, stripped.

    Raises:
        ConfigError: If the URL is incomplete.
    """
    callback_url = callback_url.strip()
    if not callback_url:
        raise ConfigError(
            "Callback URL is mandatory, please set it through the "
            "CALLBACK_URL environment variable or with --callback-url"
        )
    parts = urlsplit(callback_url)
    if not parts.scheme or not parts.netloc or not parts.path.strip("/"):
        raise ConfigError(
            f"Invalid callback URL '{callback_url}', it should include "
            "a scheme, a host and a path"
        )
    return callback_url


def callback_path(client: WebhookClient) -> str:
    """Return the path component of the client's callback URL."""
    return urlsplit(client.get_callback_url()).path or "/"


def create_client(
    provider: str,
    *,
    callback_url: str,
    user: str = "",
    token: str = "",
    api_url: str = "",
    require_credentials: bool = True,
) -> WebhookClient:
    """Create the webhook client for a provider.

    Imports are deferred so only the selected provider module is loaded.

    Args:
        provider: ``github`` or ``gitlab``.
        callback_url: Public URL receiving webhook calls.
        user: API user (GitHub only).
        token: API token.
        api_url: Provider API endpoint; the provider default when empty.
        require_credentials: Validate that API credentials are present.
            Disabled when webhook registration is skipped.

    Raises:
        ConfigError: If the provider is unknown or options are missing.
    """
    if provider == "github":
        from pullmirror.webhooks.github import (
            DEFAULT_GITHUB_URL,
            GitHubClient,
            GitHubOptions,
        )

        return GitHubClient(
            GitHubOptions(
                callback_url=callback_url,
                user=user,
                token=token,
                github_url=api_url or DEFAULT_GITHUB_URL,
            ),
            require_credentials=require_credentials,
        )
    if provider == "gitlab":
        from pullmirror.webhooks.gitlab import (
            DEFAULT_GITLAB_URL,
            GitLabClient,
            GitLabOptions,
        )

        return GitLabClient(
            GitLabOptions(
                callback_url=callback_url,
                token=token,
                gitlab_url=api_url or DEFAULT_GITLAB_URL,
            ),
            require_credentials=require_credentials,
        )
    raise ConfigError(f"Unknown webhooks provider: {provider!r}")
