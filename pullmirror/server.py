# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Mirror server: webhook endpoint, task dispatch and lifecycle.

The server owns the repository registry, a bounded worker pool that runs
fetch+push tasks, and a werkzeug HTTP listener in a background thread.

Lifecycle::

    Created -> Configuring -> Ready <-> Configuring (reload)
            -> ShuttingDown -> Stopped

``ready`` becomes True after the first successful ``configure`` and never
goes back.  ``running`` is True between ``run`` and ``shutdown``.  Webhook
requests are only accepted while both hold.

All work that shutdown must wait for (HTTP requests in flight and tasks
dispatched but not finished) is counted by a wait-group.  Units are added
under the server lock after checking ``running``, so once ``shutdown`` has
flipped the flag and starts waiting, the count can only go down.
"""

import json
import logging
import threading
import time
import uuid
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any


if TYPE_CHECKING:
    from werkzeug.wrappers.response import StartResponse

from werkzeug.exceptions import HTTPException, NotFound
from werkzeug.routing import Map, Rule
from werkzeug.serving import make_server
from werkzeug.wrappers import Request, Response

from pullmirror.config import MirrorConfig, ServerOptions
from pullmirror.git import GitClient, Repository
from pullmirror.manager import ConfigureError, RepositoryManager
from pullmirror.metrics import (
    GIT_LATENCY,
    HOOKS_ACCEPTED,
    HOOKS_FAILED,
    HOOKS_RECEIVED,
    HOOKS_UPDATED,
    LAST_CONFIG_APPLY,
    REPOSITORY_UP,
    SERVER_UP,
    MetricsRegistry,
)
from pullmirror.webhooks import PayloadError, WebhookClient, callback_path
from pullmirror.workers import Task, WaitGroup, WorkerPool


logger = logging.getLogger(__name__)

#: Request identifier used for tasks created by ``update_all``.
UPDATE_ALL_REQUEST_ID = "USR2"


class MirrorServer:
    """Receives push webhooks and mirrors the matching repositories.

    Attributes:
        options: Process-wide server options.
        webhook_client: Provider client used to parse payloads and
            register webhooks.
        git_client: Client creating repository handles.
        metrics: Metrics registry updated by the server and its tasks.
    """

    def __init__(
        self,
        options: ServerOptions,
        webhook_client: WebhookClient,
        git_client: GitClient | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.options = options
        self.webhook_client = webhook_client
        self.metrics = metrics or MetricsRegistry()
        self.metrics.mark_boot()
        self.git_client = git_client or GitClient(
            options.repositories_path,
            timeout_seconds=options.git_timeout_seconds,
            ssh_private_key=options.ssh_private_key,
            observability=self.metrics,
        )
        self.manager = RepositoryManager(
            self.git_client,
            webhook_client,
            skip_webhooks_registration=options.skip_webhooks_registration,
        )

        self._lock = threading.Lock()
        # Serializes configure passes
        self._configure_lock = threading.Lock()
        self._repositories: dict[str, Repository] = {}
        self._ready = False
        self._running = False
        self._stopped = False
        self._wait_group = WaitGroup()
        self._pool = WorkerPool(options.concurrency, self.update_repository)

        self._server: Any = None
        self._thread: threading.Thread | None = None
        self._url_map: Map | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def ready(self) -> bool:
        with self._lock:
            return self._ready

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def repositories(self) -> dict[str, Repository]:
        """Snapshot of the registry."""
        with self._lock:
            return dict(self._repositories)

    @property
    def port(self) -> int | None:
        """Port the HTTP listener is bound to, once running."""
        if self._server is None:
            return None
        return self._server.socket.getsockname()[1]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def configure(self, config: MirrorConfig) -> None:
        """Build a fresh registry and swap it in.

        On failure the previous registry and readiness are kept.

        Raises:
            ConfigureError: If any configured repository failed.
        """
        with self._configure_lock:
            logger.info(
                "configuring %d repositories", len(config.repositories)
            )
            registry = self.manager.configure(config.repositories)
            with self._lock:
                self._repositories = registry
                self._ready = True

        self.metrics.set_gauge(LAST_CONFIG_APPLY, None, time.time())
        logger.info("configuration applied, %d repositories", len(registry))

    def run(
        self,
        host: str,
        port: int,
        config: MirrorConfig | None = None,
        ready_event: threading.Event | None = None,
    ) -> None:
        """Start workers and the HTTP listener.

        Returns once the listener is bound; serving happens on a
        background thread.

        Args:
            host: Interface to bind.
            port: Port to bind, 0 for an ephemeral one.
            config: Initial configuration.  A failing initial configure
                is logged and the server starts without repositories.
            ready_event: Set once the server accepts requests.

        Raises:
            RuntimeError: If the server was already shut down.
            OSError: If the listener cannot be bound.
        """
        if self._stopped:
            raise RuntimeError("server has been shut down")

        if config is not None:
            try:
                self.configure(config)
            except ConfigureError as e:
                logger.error("initial configuration failed: %s", e)

        path = callback_path(self.webhook_client)
        self._url_map = Map(
            [
                Rule(path, endpoint="webhook"),
                Rule(self.options.metrics_path, endpoint="metrics"),
                Rule("/health", endpoint="health"),
            ]
        )

        self._pool.start()
        self._server = make_server(host, port, self._wsgi_app, threaded=True)
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="MirrorServer",
        )
        self._thread.start()

        with self._lock:
            self._running = True
        self.metrics.set_gauge(SERVER_UP, None, 1)
        logger.info(
            "listening on http://%s:%d%s", host, self.port or port, path
        )

        if ready_event is not None:
            ready_event.set()

    def shutdown(self, timeout: float | None = None) -> bool:
        """Stop accepting work, drain it and stop the listener.

        Safe to call more than once.

        Args:
            timeout: Seconds to wait for in-flight work, or None to wait
                until it is done.

        Returns:
            True if all in-flight work finished before the timeout.
        """
        with self._lock:
            if self._stopped:
                return True
            self._stopped = True
            self._running = False

        logger.info("shutting down, waiting for in-flight work")
        drained = self._wait_group.wait(timeout)
        if not drained:
            logger.warning(
                "%d units of work still in flight after %ss",
                self._wait_group.count,
                timeout,
            )

        self._pool.close()
        self._pool.join(timeout)

        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()

        self.metrics.set_gauge(SERVER_UP, None, 0)
        logger.info("server stopped")
        return drained

    def update_all(self) -> int:
        """Enqueue a mirror task for every registered repository.

        Blocks while the task queue is full.

        Returns:
            Number of tasks enqueued.
        """
        with self._lock:
            if not (self._ready and self._running):
                logger.warning(
                    "cannot update all repositories: server is not ready"
                )
                return 0
            repos = list(self._repositories.values())
            self._wait_group.add(len(repos))

        logger.info("updating all %d repositories", len(repos))
        for index, repo in enumerate(repos):
            try:
                self._pool.submit(Task(UPDATE_ALL_REQUEST_ID, repo))
            except RuntimeError:
                # Release the units of every task that was not queued
                self._wait_group.add(index - len(repos))
                raise
        return len(repos)

    def update_repository(self, task: Task) -> None:
        """Fetch from origin and push to target for one task.

        Failures are logged and counted; the task is not retried.
        """
        repo = task.repository
        origin = repo.origin.to_path()
        target = repo.target.to_path()
        try:
            started = time.monotonic()
            try:
                repo.fetch()
            except Exception as e:
                logger.error(
                    "failed to fetch repo %s for request %s: %s",
                    repo.origin,
                    task.request_id,
                    e,
                )
                self._record_failure(origin, origin)
                return
            self.metrics.observe_latency(
                GIT_LATENCY,
                {"operation": "fetch", "repo": origin},
                time.monotonic() - started,
            )
            self.metrics.inc_counter(HOOKS_UPDATED, {"repo": origin})

            started = time.monotonic()
            try:
                repo.push()
            except Exception as e:
                logger.error(
                    "failed to push repo %s to %s for request %s: %s",
                    repo.origin,
                    repo.target,
                    task.request_id,
                    e,
                )
                self._record_failure(origin, target)
                return
            self.metrics.observe_latency(
                GIT_LATENCY,
                {"operation": "push", "repo": target},
                time.monotonic() - started,
            )
            self.metrics.inc_counter(HOOKS_UPDATED, {"repo": target})
            self.metrics.set_gauge(REPOSITORY_UP, {"repo": origin}, 1)

            logger.debug(
                "repository %s pushed to %s for request %s",
                repo.origin,
                repo.target,
                task.request_id,
            )
        finally:
            self._wait_group.done()

    def _record_failure(self, origin: str, failed: str) -> None:
        self.metrics.inc_counter(HOOKS_FAILED, {"repo": failed})
        self.metrics.set_gauge(REPOSITORY_UP, {"repo": origin}, 0)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _wsgi_app(
        self,
        environ: dict[str, Any],
        start_response: "StartResponse",
    ) -> Iterable[bytes]:
        """WSGI application entry point."""
        request = Request(environ)
        response = self._dispatch(request)
        return response(environ, start_response)

    def _dispatch(self, request: Request) -> Response:
        """Route request to the matching handler."""
        if self._url_map is None:
            return Response("server is starting", status=503)
        adapter = self._url_map.bind_to_environ(request.environ)
        try:
            endpoint, _ = adapter.match()
            if endpoint == "webhook":
                return self._handle_webhook(request)
            if endpoint == "metrics":
                return self._handle_metrics(request)
            return self._handle_health(request)
        except NotFound:
            return Response("Not Found", status=404)
        except Exception:
            logger.exception("Error handling request %s", request.path)
            return Response("Internal Server Error", status=500)

    def _handle_webhook(self, request: Request) -> Response:
        self.metrics.inc_counter(HOOKS_RECEIVED)
        with self._lock:
            if not (self._running and self._ready):
                return Response("server is not ready", status=503)
            self._wait_group.add(1)
        try:
            return self._process_webhook(request)
        finally:
            self._wait_group.done()

    def _process_webhook(self, request: Request) -> Response:
        if request.method != "POST":
            return Response("only POST is allowed", status=400)

        request_id = str(uuid.uuid4())
        logger.debug(
            "received request %s from %s", request_id, request.remote_addr
        )

        try:
            payload = request.form.get("payload", "")
        except HTTPException as e:
            logger.debug(
                "failed to parse form on request %s: %s", request_id, e
            )
            return Response(f"bad request: {e}", status=400)
        if not payload:
            logger.debug("no payload in form for request %s", request_id)
            return Response("no payload in form", status=400)

        try:
            hook = self.webhook_client.parse_hook_payload(payload)
        except PayloadError as e:
            logger.debug(
                "failed to parse hook payload for request %s: %s",
                request_id,
                e,
            )
            return Response(f"bad request: {e}", status=400)

        with self._lock:
            repo = self._repositories.get(hook.repository)
            if repo is None:
                return Response(
                    f"unknown repo {hook.repository}", status=404
                )
            self._wait_group.add(1)

        self.metrics.inc_counter(HOOKS_ACCEPTED, {"origin": hook.repository})
        try:
            self._pool.submit(Task(request_id, repo))
        except RuntimeError:
            self._wait_group.done()
            raise
        return Response("Accepted", status=202)

    def _handle_metrics(self, request: Request) -> Response:
        return Response(
            self.metrics.export_prometheus(),
            content_type="text/plain; version=0.0.4; charset=utf-8",
        )

    def _handle_health(self, request: Request) -> Response:
        with self._lock:
            ready = self._ready
            running = self._running
            count = len(self._repositories)
            stopped = self._stopped

        if ready and running:
            status = "ok"
        elif stopped:
            status = "stopping"
        else:
            status = "starting"

        body = {
            "status": status,
            "ready": ready,
            "running": running,
            "repositories": count,
        }
        return Response(
            json.dumps(body),
            status=200 if status == "ok" else 503,
            mimetype="application/json",
        )
