"""Application bootstrap for podmedic.

Wires all components in dependency order and manages the asyncio lifecycle.
Startup order: config → logging → K8s client → rate limiter → executor
              → one pipeline per namespace

Shutdown cancels the pipelines first (which fails any in-flight decision
closed) and then closes the API client.  An invalid configuration or a fatal
watch error stops the process with exit status 1.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any

from podmedic.config import load_config
from podmedic.models.config import PodmedicConfig
from podmedic.observability.logging import get_logger, setup_logging

if TYPE_CHECKING:
    import structlog

    from podmedic.pipeline import NamespacePipeline

_SHUTDOWN_GRACE_SECONDS = 15


class _ComponentError(Exception):
    """Raised when a mandatory component fails to start."""

    def __init__(self, component: str, cause: Exception) -> None:
        super().__init__(f"Component '{component}' failed to start: {cause}")
        self.component = component
        self.cause = cause


class PodmedicApp:
    """Application root.  Owns every component and coordinates their lifecycle.

    Calling ``stop()`` on an app that was never started (or already stopped)
    is safe.

    Args:
        config: Pre-built configuration snapshot.  When omitted the
                configuration is loaded from PODMEDIC_* variables at start.
    """

    def __init__(self, config: PodmedicConfig | None = None) -> None:
        self.config = config

        self._api_client: Any = None
        self._core_v1: Any = None
        self._rate_limiter: object | None = None
        self._executor: object | None = None
        self._pipelines: list[NamespacePipeline] = []
        self._pipeline_tasks: list[asyncio.Task[None]] = []

        self._running = False
        self._stop_task: asyncio.Task[None] | None = None
        self.fatal_error: BaseException | None = None
        self._log: structlog.stdlib.BoundLogger | None = None

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start all components in dependency order.

        Raises _ComponentError if a mandatory component cannot start.
        """
        # --- 1. Configuration -------------------------------------------
        if self.config is None:
            try:
                self.config = load_config()
            except ValueError as exc:
                raise _ComponentError("config", exc) from exc

        # --- 2. Logging -------------------------------------------------
        setup_logging(self.config.log.level)
        self._log = get_logger("app")
        self._log.info(
            "podmedic starting",
            version=_podmedic_version(),
            namespaces=[ns or "*" for ns in self.config.watch.namespaces],
            dry_run=self.config.remediation.dry_run,
            threshold=self.config.remediation.flapping_threshold,
            cooldown_seconds=int(self.config.remediation.cooldown.total_seconds()),
        )

        # --- 3. Kubernetes client ----------------------------------------
        await self._start_k8s_client()

        # --- 4. Rate limiter and executor --------------------------------
        self._start_executor()

        # --- 5. Pipelines ------------------------------------------------
        self._start_pipelines()

        self._running = True
        self._log.info("podmedic started", pipelines=len(self._pipeline_tasks))

    async def _start_k8s_client(self) -> None:
        """Initialise kubernetes-asyncio from in-cluster config or kubeconfig."""
        assert self._log is not None
        self._log.debug("starting k8s client")
        try:
            import kubernetes_asyncio.config as k8s_config  # type: ignore[import-untyped]
            from kubernetes_asyncio import client as k8s_client  # type: ignore[import-untyped]

            try:
                k8s_config.load_incluster_config()
                self._log.info("k8s client configured from in-cluster service account")
            except k8s_config.ConfigException:
                await k8s_config.load_kube_config()
                self._log.info("k8s client configured from kubeconfig")

            self._api_client = k8s_client.ApiClient()
            self._core_v1 = k8s_client.CoreV1Api(self._api_client)
        except Exception as exc:
            raise _ComponentError("k8s_client", exc) from exc

    def _start_executor(self) -> None:
        assert self._log is not None
        assert self.config is not None
        try:
            from podmedic.remediation import (
                ActionExecutor,
                KubernetesPodDeleter,
                RemediationRateLimiter,
            )

            remediation = self.config.remediation
            self._rate_limiter = RemediationRateLimiter(
                max_actions=remediation.max_actions,
                window=remediation.rate_window,
            )
            deleter = None if remediation.dry_run else KubernetesPodDeleter(self._core_v1)
            self._executor = ActionExecutor(deleter, dry_run=remediation.dry_run)
            self._log.info(
                "executor started",
                dry_run=remediation.dry_run,
                max_actions=remediation.max_actions,
                rate_window_seconds=int(remediation.rate_window.total_seconds()),
            )
        except Exception as exc:
            raise _ComponentError("executor", exc) from exc

    def _start_pipelines(self) -> None:
        assert self._log is not None
        assert self.config is not None
        try:
            from podmedic.collector import KubernetesEventSource
            from podmedic.pipeline import build_pipeline
            from podmedic.remediation import KubernetesPodLookup

            source = KubernetesEventSource(self._core_v1)
            lookup = KubernetesPodLookup(self._core_v1)
            for namespace in self.config.watch.namespaces:
                pipeline = build_pipeline(
                    namespace=namespace,
                    config=self.config,
                    source=source,
                    executor=self._executor,  # type: ignore[arg-type]
                    lookup=lookup,
                    rate_limiter=self._rate_limiter,  # type: ignore[arg-type]
                )
                task = asyncio.create_task(
                    self._run_pipeline(pipeline),
                    name=f"pipeline-{namespace or 'all'}",
                )
                self._pipelines.append(pipeline)
                self._pipeline_tasks.append(task)
        except Exception as exc:
            raise _ComponentError("pipelines", exc) from exc

    async def _run_pipeline(self, pipeline: NamespacePipeline) -> None:
        """Run one pipeline; a fatal watch error takes the whole app down."""
        from podmedic.collector import SourceFatalError

        log = self._log or get_logger("app")
        try:
            await pipeline.run()
        except SourceFatalError as exc:
            log.critical("fatal watch error", namespace=pipeline.namespace or "*", error=str(exc))
            self.fatal_error = exc
            self._running = False
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.critical(
                "pipeline crashed",
                namespace=pipeline.namespace or "*",
                error=str(exc),
                exc_info=True,
            )
            self.fatal_error = exc
            self._running = False

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Cancel pipelines, then release the API client.

        Concurrent and repeated calls all wait for the same shutdown.
        """
        if self._stop_task is None:
            self._stop_task = asyncio.ensure_future(self._shutdown())
        await self._stop_task

    async def _shutdown(self) -> None:
        if not self._running and self._log is None:
            # Never started
            return

        log = self._log or get_logger("app")
        log.info("podmedic shutting down")
        self._running = False

        for task in self._pipeline_tasks:
            if not task.done():
                task.cancel()
        if self._pipeline_tasks:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self._pipeline_tasks, return_exceptions=True),
                    timeout=_SHUTDOWN_GRACE_SECONDS,
                )
            except TimeoutError:
                log.warning("pipeline stop timed out", timeout=_SHUTDOWN_GRACE_SECONDS)
        self._pipeline_tasks.clear()

        await self._stop_k8s_client()
        log.info("podmedic stopped")

    async def _stop_k8s_client(self) -> None:
        if self._api_client is None:
            return
        log = self._log or get_logger("app")
        try:
            await self._api_client.close()
        except Exception as exc:
            log.debug("k8s client close raised (non-fatal)", error=str(exc))
        self._api_client = None


def _podmedic_version() -> str:
    from podmedic import __version__

    return __version__


# ---------------------------------------------------------------------------
# Async entrypoint
# ---------------------------------------------------------------------------


async def main(config: PodmedicConfig | None = None) -> None:
    """Create the app, register OS signals, run until shutdown is requested."""
    app = PodmedicApp(config)
    loop = asyncio.get_running_loop()

    shutdown_triggered = False

    def _request_shutdown() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            return
        shutdown_triggered = True
        asyncio.create_task(app.stop(), name="shutdown")

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown)

    try:
        await app.start()
        while app.running:
            await asyncio.sleep(1)
    except _ComponentError as exc:
        log = get_logger("app")
        log.critical(
            "fatal startup error",
            component=exc.component,
            error=str(exc.cause),
        )
        await app.stop()
        raise SystemExit(1) from exc
    finally:
        await app.stop()

    if app.fatal_error is not None:
        raise SystemExit(1)
