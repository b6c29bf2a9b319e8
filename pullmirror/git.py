# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Local bare repositories that mirror an origin into a target.

Every mirrored repository lives at ``<repositories-root>/<domain>/<owner>/
<name>`` as a bare repository with two remotes:

- ``origin``: fetched with ``+refs/heads/*:refs/remotes/origin/*`` and
  ``+refs/tags/*:refs/tags/*``.
- ``target``: never fetched; pushed with
  ``+refs/remotes/origin/*:refs/heads/*`` and ``+refs/tags/*:refs/tags/*``
  so that the target ends up with exactly the origin's branches and tags.

All operations shell out to the ``git`` command line and are bounded by
the client's timeout.  A timeout is reported like any other failure; git
itself guarantees the on-disk repository stays consistent.
"""

import base64
import logging
import os
import random
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pullmirror.giturl import GitURL, Transport
from pullmirror.logging import SecretFilter
from pullmirror.metrics import HOOKS_RETRIED, NullObservability, Observability


logger = logging.getLogger(__name__)

ORIGIN_REMOTE = "origin"
TARGET_REMOTE = "target"

FETCH_REFSPECS = (
    "+refs/heads/*:refs/remotes/origin/*",
    "+refs/tags/*:refs/tags/*",
)
PUSH_REFSPECS = (
    "+refs/remotes/origin/*:refs/heads/*",
    "+refs/tags/*:refs/tags/*",
)

#: Total push attempts, including the first one.
PUSH_ATTEMPTS = 3
BACKOFF_MIN_SECONDS = 0.1
BACKOFF_MAX_SECONDS = 1.0
BACKOFF_FACTOR = 2.0


class GitError(Exception):
    """Base exception for git operation failures."""


class CloneError(GitError):
    """Cloning an origin into the local path failed."""


class OpenError(GitError):
    """An existing local path could not be used as a repository."""


class AuthError(GitError):
    """Authentication material could not be set up."""


class FetchError(GitError):
    """Fetching from origin failed."""


class PushError(GitError):
    """Pushing to target failed."""


@dataclass(frozen=True)
class GitAuth:
    """Authentication settings for one git invocation.

    Attributes:
        config: ``-c key=value`` options passed before the subcommand.
        env: Extra environment variables for the git process.
    """

    config: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)


def backoff_delay(attempt: int) -> float:
    """Return the jittered delay to wait after a failed attempt.

    The upper bound grows from ``BACKOFF_MIN_SECONDS`` by
    ``BACKOFF_FACTOR`` per attempt and is capped at
    ``BACKOFF_MAX_SECONDS``; the delay is drawn uniformly between the
    minimum and that bound.

    Args:
        attempt: Number of attempts already made (1 after the first
            failure).
    """
    ceiling = min(
        BACKOFF_MIN_SECONDS * BACKOFF_FACTOR ** (attempt - 1),
        BACKOFF_MAX_SECONDS,
    )
    return random.uniform(BACKOFF_MIN_SECONDS, ceiling)


class GitClient:
    """Creates repository handles and runs git with shared settings.

    Attributes:
        repositories_path: Root directory for local clones.
        timeout_seconds: Timeout applied to every git process.
        ssh_private_key: Key file used for SSH remotes, if any.
        observability: Sink for retry counters.
    """

    def __init__(
        self,
        repositories_path: Path,
        timeout_seconds: int = 60,
        ssh_private_key: Path | None = None,
        observability: Observability | None = None,
    ) -> None:
        self.repositories_path = repositories_path
        self.timeout_seconds = timeout_seconds
        self.ssh_private_key = ssh_private_key
        self.observability = observability or NullObservability()

    def path_for(self, url: GitURL) -> Path:
        """Return the local path of the clone of ``url``."""
        return self.repositories_path / url.to_path()

    def auth_for(self, url: GitURL) -> GitAuth:
        """Resolve authentication for a remote.

        SSH remotes use the configured private key.  Without a key no
        authentication is attached and git falls back to the ssh agent
        and default identities, failing later if none is accepted.  HTTP
        remotes send embedded credentials as basic auth.

        Raises:
            AuthError: If the configured private key cannot be read.
        """
        if url.transport is Transport.SSH:
            if self.ssh_private_key is None:
                logger.debug(
                    "%s transport for %s but no ssh private key set",
                    url.transport.value,
                    url,
                )
                return GitAuth()
            if not os.access(self.ssh_private_key, os.R_OK):
                raise AuthError(
                    f"failed to read ssh private key {self.ssh_private_key}"
                )
            logger.debug(
                "using private key %s for %s", self.ssh_private_key, url
            )
            command = (
                f"ssh -i {shlex.quote(str(self.ssh_private_key))}"
                " -o IdentitiesOnly=yes"
                " -o StrictHostKeyChecking=accept-new"
            )
            return GitAuth(env={"GIT_SSH_COMMAND": command})

        if url.transport is Transport.HTTP and url.username:
            token = base64.b64encode(
                f"{url.username}:{url.password}".encode()
            ).decode()
            SecretFilter.register_secret(token)
            return GitAuth(
                config=(f"http.extraHeader=Authorization: Basic {token}",)
            )

        return GitAuth()

    def clone_or_open(self, origin: GitURL, target: GitURL) -> "Repository":
        """Return a handle for ``origin``, cloning it if needed.

        An existing clone has its ``origin`` and ``target`` remotes
        reconciled with the given descriptors.

        Raises:
            CloneError: If cloning fails.
            OpenError: If the local path is unusable.
            AuthError: If authentication cannot be set up.
        """
        path = self.path_for(origin)
        if path.exists() and not (path.is_dir() and _is_empty_dir(path)):
            repo = self._open(path, origin, target)
            logger.debug("repository %s already exists locally", origin)
            return repo
        return self._clone(path, origin, target)

    def _open(self, path: Path, origin: GitURL, target: GitURL) -> "Repository":
        try:
            self.run(
                ["--git-dir", str(path), "rev-parse", "--is-bare-repository"],
                error_cls=OpenError,
                description=f"failed to open repo {origin} at {path}",
            )
        except OpenError:
            logger.error(
                "%s is not a git repository, consider wiping the local copy",
                path,
            )
            raise

        repo = Repository(path, origin, target, self)
        repo.update_remotes()
        return repo

    def _clone(
        self, path: Path, origin: GitURL, target: GitURL
    ) -> "Repository":
        logger.debug(
            "could not find repository %s, cloning into %s", origin, path
        )
        auth = self.auth_for(origin)

        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.run(
                ["clone", "--bare", "--", origin.uri, str(path)],
                auth=auth,
                error_cls=CloneError,
                description=f"failed to execute clone of origin {origin}",
            )
            repo = Repository(path, origin, target, self)
            repo.set_remote(ORIGIN_REMOTE, origin.uri, FETCH_REFSPECS)
            logger.debug("creating remote `%s` for %s", TARGET_REMOTE, origin)
            repo.set_remote(TARGET_REMOTE, target.uri)
        except GitError as e:
            # Leave no half-initialized clone behind for the next attempt
            shutil.rmtree(path, ignore_errors=True)
            if isinstance(e, CloneError):
                raise
            raise CloneError(
                f"failed to add remotes to clone of {origin}: {e}"
            ) from e

        logger.info("cloned %s into %s", origin, path)
        return repo

    def run(
        self,
        args: list[str],
        *,
        auth: GitAuth | None = None,
        error_cls: type[GitError] = GitError,
        description: str = "git command failed",
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run a git command with the client timeout.

        Args:
            args: Arguments after ``git`` (and after auth ``-c`` options).
            auth: Authentication settings for this invocation.
            error_cls: Exception type raised on failure.
            description: Prefix of the error message.
            check: If False, a non-zero exit status is returned instead
                of raised.

        Returns:
            The completed process with text stdout/stderr.

        Raises:
            GitError: (as ``error_cls``) on timeout, missing git binary,
                or non-zero exit when ``check`` is set.
        """
        auth = auth or GitAuth()
        command = ["git"]
        for option in auth.config:
            command += ["-c", option]
        command += args

        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0", **auth.env}

        try:
            return subprocess.run(
                command,
                check=check,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            raise error_cls(
                f"{description}: timed out after {self.timeout_seconds}s"
            ) from e
        except subprocess.CalledProcessError as e:
            error_msg = e.stderr.strip() if e.stderr else str(e)
            raise error_cls(f"{description}: {error_msg}") from e
        except OSError as e:
            raise error_cls(f"{description}: {e}") from e


class Repository:
    """A local bare repository with its origin and target.

    Having an instance means the repository exists on disk.  Fetch and
    push of a single instance are not serialized against each other;
    callers run them in order.

    Attributes:
        path: Location of the bare repository.
        origin: Descriptor of the repository mirrored from.
        target: Descriptor of the repository mirrored to.
        client: Client holding timeout and authentication settings.
    """

    def __init__(
        self,
        path: Path,
        origin: GitURL,
        target: GitURL,
        client: GitClient,
    ) -> None:
        self.path = path
        self.origin = origin
        self.target = target
        self.client = client

    def __repr__(self) -> str:
        return (
            f"Repository(path={str(self.path)!r}, origin={str(self.origin)!r}, "
            f"target={str(self.target)!r})"
        )

    def _git(
        self, args: list[str], **kwargs: Any
    ) -> subprocess.CompletedProcess[str]:
        return self.client.run(["--git-dir", str(self.path), *args], **kwargs)

    def remote_url(self, name: str) -> str | None:
        """Return the recorded URL of a remote, or None if undefined."""
        result = self._git(
            ["config", "--get", f"remote.{name}.url"],
            error_cls=OpenError,
            description=f"failed to read remote {name} of {self.origin}",
            check=False,
        )
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def set_remote(
        self, name: str, url: str, fetch_refspecs: tuple[str, ...] = ()
    ) -> None:
        """Define (or redefine) a remote.

        Raises:
            OpenError: If git refuses to write the remote configuration.
        """
        if self.remote_url(name) is not None:
            self._git(
                ["remote", "remove", name],
                error_cls=OpenError,
                description=f"could not remove {name} remote",
            )
        self._git(
            ["remote", "add", name, url],
            error_cls=OpenError,
            description=f"could not add {name} remote",
        )
        # Drop the default refspec added by `git remote add`
        self._git(
            ["config", "--unset-all", f"remote.{name}.fetch"],
            check=False,
        )
        for refspec in fetch_refspecs:
            self._git(
                ["config", "--add", f"remote.{name}.fetch", refspec],
                error_cls=OpenError,
                description=f"could not configure {name} remote",
            )

    def update_remotes(self) -> None:
        """Point ``origin`` and ``target`` at the configured URLs.

        Remotes whose recorded URL differs from the descriptor (or that
        are missing) are replaced.

        Raises:
            OpenError: If a remote cannot be rewritten.
        """
        for name, url, refspecs in (
            (ORIGIN_REMOTE, self.origin, FETCH_REFSPECS),
            (TARGET_REMOTE, self.target, ()),
        ):
            recorded = self.remote_url(name)
            if recorded == url.uri:
                continue
            if recorded is None:
                logger.warning(
                    "repository %s has no %s remote, adding it", self.path, name
                )
            else:
                logger.info("updating %s remote of %s", name, self.origin)
            self.set_remote(name, url.uri, refspecs)

    def fetch(self) -> None:
        """Fetch all branches and tags from origin.

        Nothing to fetch counts as success.

        Raises:
            AuthError: If authentication cannot be set up.
            FetchError: If git fails or times out.
        """
        auth = self.client.auth_for(self.origin)

        logger.debug("fetching %s", self.origin)
        result = self._git(
            ["fetch", "--prune", "--tags", ORIGIN_REMOTE, *FETCH_REFSPECS],
            auth=auth,
            error_cls=FetchError,
            description=f"failed to fetch from origin {self.origin}",
        )
        if not result.stdout.strip() and not result.stderr.strip():
            logger.debug("%s is already up to date", self.origin)

    def push(self) -> None:
        """Force-push origin's branches and tags to target.

        Failed pushes are retried with exponential backoff, for
        ``PUSH_ATTEMPTS`` attempts in total.  Nothing to push counts as
        success.

        Raises:
            AuthError: If authentication cannot be set up.
            PushError: If the last attempt fails.
        """
        auth = self.client.auth_for(self.target)

        attempt = 0
        while True:
            attempt += 1
            logger.debug("pushing to %s", self.target)
            try:
                result = self._git(
                    ["push", "--force", TARGET_REMOTE, *PUSH_REFSPECS],
                    auth=auth,
                    error_cls=PushError,
                    description=f"failed to push to target {self.target}",
                )
            except PushError as e:
                if attempt >= PUSH_ATTEMPTS:
                    raise
                logger.warning(
                    "failed to push to remote repo %s: %s... retrying",
                    self.target,
                    e,
                )
                self.client.observability.inc_counter(
                    HOOKS_RETRIED, {"repo": self.target.to_path()}
                )
                time.sleep(backoff_delay(attempt))
                continue

            if "Everything up-to-date" in result.stderr:
                logger.debug("%s is already up to date", self.target)
            return


def _is_empty_dir(path: Path) -> bool:
    return not any(path.iterdir())
