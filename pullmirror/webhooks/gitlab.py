# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""GitLab webhook client.

Project hooks are managed through the REST API
(``/projects/:id/hooks``).  Registration is idempotent: a hook already
pointing at our callback URL is updated in place, otherwise a new one is
created.  Only push and tag push events are enabled.

The relay in front of the service forwards GitLab's JSON body as the
``payload`` form field, the same shape GitHub uses.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from urllib.parse import quote

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

DEFAULT_GITLAB_URL = "https://gitlab.com/api/v4"


@dataclass(frozen=True)
class GitLabOptions:
    """Settings for the GitLab client.

    Attributes:
        callback_url: Public URL GitLab will call.
        token: Access token with ``api`` scope.
        gitlab_url: API base URL.
        timeout_seconds: HTTP timeout for API calls.
    """

    callback_url: str
    token: str = field(default="", repr=False)
    gitlab_url: str = DEFAULT_GITLAB_URL
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


class GitLabClient:
    """Manages GitLab project hooks and parses push events."""

    def __init__(
        self, options: GitLabOptions, require_credentials: bool = True
    ) -> None:
        validate_callback_url(options.callback_url)
        if require_credentials:
            if not options.token.strip():
                raise ConfigError(
                    "GitLab token is necessary for registering webhooks"
                )
            if not options.gitlab_url.strip():
                raise ConfigError(
                    "GitLab url is necessary for registering webhooks"
                )
        SecretFilter.register_secret(options.token)
        self.options = options

    def get_callback_url(self) -> str:
        """Return the public URL that receives webhook calls."""
        return self.options.callback_url

    def register_webhook(self, url: GitURL) -> None:
        """Create or update the push hook of ``url``'s project.

        Raises:
            WebhookError: If the API cannot be reached or rejects a call.
        """
        logger.debug("registering webhook for %s", url)

        project = quote(url.to_key(), safe="")
        base = self.options.gitlab_url.rstrip("/")
        hooks_url = f"{base}/projects/{project}/hooks"
        body = {
            "url": self.options.callback_url,
            "push_events": True,
            "tag_push_events": True,
        }

        try:
            with httpx.Client(
                timeout=self.options.timeout_seconds,
                headers={"PRIVATE-TOKEN": self.options.token},
            ) as client:
                response = client.get(hooks_url)
                _raise_for_status(response, url, "list hooks")

                existing = [
                    hook
                    for hook in response.json()
                    if hook.get("url") == self.options.callback_url
                ]
                if existing:
                    hook_id = existing[0]["id"]
                    response = client.put(
                        f"{hooks_url}/{hook_id}", json=body
                    )
                    _raise_for_status(response, url, "update hook")
                    logger.debug("webhook %s for %s updated", hook_id, url)
                else:
                    response = client.post(hooks_url, json=body)
                    _raise_for_status(response, url, "create hook")
                    logger.debug("webhook for %s created", url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise WebhookError(
                f"failed to register webhook for {url}: {e}"
            ) from e
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise WebhookError(
                f"unexpected hooks listing for {url}: {e}"
            ) from e

    def parse_hook_payload(self, payload: str) -> HookPayload:
        """Parse a GitLab push event.

        Raises:
            PayloadError: If the payload is not JSON or lacks
                ``project.path_with_namespace``.
        """
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise PayloadError(f"could not parse hook payload: {e}") from e

        if not isinstance(data, dict):
            raise PayloadError("could not parse hook payload: not an object")

        project = data.get("project")
        path = (
            project.get("path_with_namespace")
            if isinstance(project, dict)
            else None
        )
        if not isinstance(path, str) or not path:
            raise PayloadError(
                "hook payload has no project.path_with_namespace"
            )

        event = data.get("object_kind")
        return HookPayload(
            repository=path,
            events=(event,) if isinstance(event, str) else (),
        )


def _raise_for_status(
    response: httpx.Response, url: GitURL, action: str
) -> None:
    if response.is_success:
        return
    raise WebhookError(
        f"failed to {action} for {url}: status {response.status_code} "
        f"{response.reason_phrase}: {response.text}"
    )
