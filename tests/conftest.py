# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across multiple test modules."""

import json
import subprocess
from pathlib import Path

import pytest

from pullmirror.giturl import GitURL, Transport
from pullmirror.logging import SecretFilter
from pullmirror.webhooks import HookPayload, PayloadError


def git(*args: str, cwd: Path | None = None) -> str:
    """Run git and return its stripped stdout."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


def commit_file(repo_path: Path, name: str, content: str) -> str:
    """Write a file, commit it and return the new commit id."""
    (repo_path / name).write_text(content)
    git("add", name, cwd=repo_path)
    git("commit", "-m", f"Update {name}", cwd=repo_path)
    return git("rev-parse", "HEAD", cwd=repo_path)


def local_url(path: Path, owner: str, name: str) -> GitURL:
    """Build a descriptor for a repository on the local filesystem."""
    return GitURL(
        uri=str(path),
        transport=Transport.FILE,
        domain="local",
        owner=owner,
        name=name,
    )


@pytest.fixture(autouse=True)
def _clear_secrets():
    """Keep registered secrets from leaking between tests."""
    yield
    SecretFilter.clear_secrets()


@pytest.fixture
def origin_repo(tmp_path: Path) -> Path:
    """Create a git repository with one commit on main and one tag.

    Returns:
        Path to the git repository root.
    """
    repo_path = tmp_path / "origin"
    repo_path.mkdir()

    git("init", cwd=repo_path)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=repo_path)
    git("config", "user.name", "Test User", cwd=repo_path)
    git("config", "user.email", "test@example.com", cwd=repo_path)

    commit_file(repo_path, "README.md", "# Test Repo\n")
    git("tag", "v1.0.0", cwd=repo_path)

    return repo_path


@pytest.fixture
def target_repo(tmp_path: Path) -> Path:
    """Create an empty bare repository to push mirrors into."""
    repo_path = tmp_path / "target.git"
    git("init", "--bare", str(repo_path))
    return repo_path


@pytest.fixture
def repositories_path(tmp_path: Path) -> Path:
    """Create the root directory for local clones."""
    path = tmp_path / "repositories"
    path.mkdir()
    return path


@pytest.fixture
def origin_url(origin_repo: Path) -> GitURL:
    """Descriptor of the origin repository fixture."""
    return local_url(origin_repo, "acme", "widget")


@pytest.fixture
def target_url(target_repo: Path) -> GitURL:
    """Descriptor of the target repository fixture."""
    return local_url(target_repo, "mirror", "widget")


class FakeWebhookClient:
    """In-memory webhook client using the GitHub payload shape."""

    def __init__(
        self,
        callback_url: str = "https://mirror.example.com/hooks/push",
        fail_registration: bool = False,
    ) -> None:
        self.callback_url = callback_url
        self.fail_registration = fail_registration
        self.registered: list[GitURL] = []

    def register_webhook(self, url: GitURL) -> None:
        from pullmirror.webhooks import WebhookError

        self.registered.append(url)
        if self.fail_registration:
            raise WebhookError(f"registration refused for {url}")

    def parse_hook_payload(self, payload: str) -> HookPayload:
        try:
            data = json.loads(payload)
            return HookPayload(repository=data["repository"]["full_name"])
        except (ValueError, KeyError, TypeError) as e:
            raise PayloadError(f"could not parse hook payload: {e}") from e

    def get_callback_url(self) -> str:
        return self.callback_url


@pytest.fixture
def webhook_client() -> FakeWebhookClient:
    """Webhook client that records registrations."""
    return FakeWebhookClient()


def push_payload(full_name: str) -> str:
    """Build a minimal GitHub push payload."""
    return json.dumps(
        {
            "repository": {
                "url": f"https://github.com/{full_name}",
                "full_name": full_name,
            },
            "hook": {"events": ["push"]},
        }
    )
