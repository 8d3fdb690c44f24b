"""
Analysis Orchestrator
=====================

Drives every enabled analysis pipeline for one session concurrently and keeps
a single status table that observers can subscribe to.

Architecture:
-------------
    AnalysisOrchestrator          process-wide registry of runs (by session)
        └── AnalysisRun           one run: status table + one task per kind
                ├── PipelineExecutor   one attempt of one kind
                └── RetryPolicy        backoff between attempts

State machine of a run:

    not_started -> running -> completed
                        └---> cancelled

A run is ``completed`` the instant every enabled kind is terminal (success or
error); partial success is a normal completed run. Retrying a failed kind
puts the run back to ``running`` until that kind settles again.

Concurrency:
------------
Every pipeline kind runs in its own asyncio task. The status table is only
mutated under the run's lock and only handed out as deep copies. Each launch
of a kind gets a fresh launch id; reports carrying an older launch id (a kind
that was retried) or arriving after cancellation are discarded.
"""

import asyncio
import inspect
import itertools
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from config import Settings, get_settings
from core.actions import SmartActionsEngine
from core.analysis_client import AnalysisClientProtocol, create_analysis_client
from core.executor import AuditStoreProtocol, PipelineExecutor
from core.registry import PipelineRegistry, create_default_registry, default_pipeline_config
from core.retry import RetryPolicy
from exceptions import (
    ConfigurationError,
    NoPipelinesEnabledError,
    PipelineCancelledError,
    PipelineError,
    RunNotFoundError,
    RunStateError,
    UpstreamError,
)
from models import (
    AnalysisContext,
    PipelineConfig,
    PipelineErrorInfo,
    PipelineExecutionMetadata,
    PipelineKind,
    PipelineRunState,
    PipelineStatus,
    RunState,
    RunStatusTable,
    SmartAction,
)


logger = logging.getLogger(__name__)


# Type aliases for subscriber callbacks
StatusCallback = Callable[[RunStatusTable], None]
AsyncStatusCallback = Callable[[RunStatusTable], Awaitable[None]]
Subscriber = Union[StatusCallback, AsyncStatusCallback]


def _error_info(error: PipelineError) -> PipelineErrorInfo:
    return PipelineErrorInfo(
        message=error.message,
        kind=error.kind,
        code=error.code,
        retryable=error.retryable,
        error_type=error.__class__.__name__
    )


class AnalysisRun:
    """
    Handle of one analysis run.

    Created by ``AnalysisOrchestrator.start``. Methods that launch or cancel
    tasks must be called from the event loop the run was started on;
    ``get_status`` is safe from any thread.
    """

    def __init__(
        self,
        context: AnalysisContext,
        config: Dict[PipelineKind, PipelineConfig],
        enabled: List[PipelineKind],
        registry: PipelineRegistry,
        executor: PipelineExecutor,
        retry_policy: RetryPolicy
    ):
        self.run_id = str(uuid.uuid4())[:8]
        self.context = context
        self.config = config
        self.registry = registry
        self.executor = executor
        self.retry_policy = retry_policy

        self._lock = threading.Lock()
        self._table = RunStatusTable(
            run_id=self.run_id,
            session_id=context.session_id,
            pipelines={kind: PipelineRunState() for kind in registry.kinds},
            enabled=list(enabled),
        )
        self._tasks: Dict[PipelineKind, asyncio.Task] = {}
        self._launch_ids: Dict[PipelineKind, int] = {}
        self._launch_counter = itertools.count(1)
        self._update_subscribers: Dict[int, Subscriber] = {}
        self._complete_subscribers: Dict[int, Subscriber] = {}
        self._subscriber_ids = itertools.count(1)
        self._callback_tasks: set = set()
        self._complete_fired = False
        self._finished = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self.context.session_id

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._table.run_state

    def get_status(self) -> RunStatusTable:
        """Deep-copied snapshot of the status table."""
        with self._lock:
            return self._table.model_copy(deep=True)

    async def wait(self, timeout: Optional[float] = None) -> RunStatusTable:
        """
        Wait until the run is completed or cancelled and return the snapshot.

        Raises:
            asyncio.TimeoutError: The run did not finish within ``timeout``
        """
        await asyncio.wait_for(self._finished.wait(), timeout=timeout)
        return self.get_status()

    def subscribe(
        self,
        on_update: Optional[Subscriber] = None,
        on_complete: Optional[Subscriber] = None
    ) -> Callable[[], None]:
        """
        Register observers. Both may be sync or async callables.

        ``on_update`` receives a snapshot after every state transition.
        ``on_complete`` fires once per run, with the snapshot taken the
        instant every enabled kind became terminal.

        Returns:
            A callable that removes both observers
        """
        subscriber_id = next(self._subscriber_ids)
        if on_update is not None:
            self._update_subscribers[subscriber_id] = on_update
        if on_complete is not None:
            self._complete_subscribers[subscriber_id] = on_complete

        def unsubscribe() -> None:
            self._update_subscribers.pop(subscriber_id, None)
            self._complete_subscribers.pop(subscriber_id, None)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Launch one task per enabled kind, in priority order."""
        self._loop = asyncio.get_running_loop()
        with self._lock:
            if self._table.run_state != RunState.NOT_STARTED:
                raise RunStateError(self.session_id, "start", f"run is {self._table.run_state.value}")
            self._table.run_state = RunState.RUNNING
            launches = [(kind, self._prepare_launch(kind)) for kind in self._table.enabled]
            self._touch()

        logger.info(
            f"[{self.run_id}] Starting analysis for session {self.session_id}: "
            f"{', '.join(kind.value for kind in self._table.enabled)}"
        )
        for kind, launch_id in launches:
            self._spawn(kind, launch_id)

    def retry_one(self, kind: PipelineKind) -> None:
        """
        Relaunch a failed kind from attempt 0. Other kinds are untouched.

        Raises:
            RunStateError: Run cancelled, kind not enabled or kind not in error
        """
        kind = self.registry.get(kind).kind
        with self._lock:
            if self._table.run_state == RunState.CANCELLED:
                raise RunStateError(self.session_id, f"retry {kind.value}", "run was cancelled")
            if kind not in self._table.enabled:
                raise RunStateError(self.session_id, f"retry {kind.value}", "pipeline is not enabled")
            status = self._table.pipelines[kind].status
            if status != PipelineStatus.ERROR:
                raise RunStateError(
                    self.session_id, f"retry {kind.value}", f"pipeline is {status.value}, not error"
                )
            launch_id = self._prepare_launch(kind)
            self._table.run_state = RunState.RUNNING
            self._finished.clear()
            self._touch()
            snapshot = self._table.model_copy(deep=True)

        logger.info(f"[{self.run_id}] Retrying {kind.value}")
        previous = self._tasks.get(kind)
        if previous is not None and not previous.done():
            previous.cancel()
        self._spawn(kind, launch_id)
        self._publish(snapshot, completed=False)

    def retry_all(self) -> List[PipelineKind]:
        """Retry every kind currently in error. Returns the relaunched kinds."""
        if self.state == RunState.CANCELLED:
            raise RunStateError(self.session_id, "retry all", "run was cancelled")
        with self._lock:
            failed = self._table.kinds_with_status(PipelineStatus.ERROR)
        for kind in failed:
            self.retry_one(kind)
        return failed

    def cancel(self) -> None:
        """
        Abort every in-flight pipeline.

        Non-terminal kinds become ``error`` with code CANCELLED; the run
        becomes ``cancelled`` and cannot be restarted or retried. Completion
        observers are not notified.
        """
        with self._lock:
            if self._table.run_state == RunState.CANCELLED:
                logger.info(f"[{self.run_id}] Already cancelled")
                return
            if self._table.run_state == RunState.COMPLETED:
                raise RunStateError(self.session_id, "cancel", "run already completed")

            now = datetime.now()
            for kind in self._table.enabled:
                state = self._table.pipelines[kind]
                if state.status.is_terminal:
                    continue
                state.status = PipelineStatus.ERROR
                state.error = _error_info(PipelineCancelledError(kind=kind.value))
                state.result = None
                state.progress_percent = 100
                state.ended_at = now
            self._table.run_state = RunState.CANCELLED
            self._launch_ids.clear()
            self._touch()
            snapshot = self._table.model_copy(deep=True)
            tasks = list(self._tasks.values())

        for task in tasks:
            if not task.done():
                task.cancel()
        self._finished.set()
        logger.info(f"[{self.run_id}] Cancelled")
        self._publish(snapshot, completed=False)

    # -------------------------------------------------------------------------
    # Pipeline tasks
    # -------------------------------------------------------------------------

    def _prepare_launch(self, kind: PipelineKind) -> int:
        """Reset a kind for a fresh launch. Caller holds the lock."""
        launch_id = next(self._launch_counter)
        self._launch_ids[kind] = launch_id
        self._table.pipelines[kind] = PipelineRunState(
            status=PipelineStatus.LOADING,
            started_at=datetime.now(),
        )
        return launch_id

    def _spawn(self, kind: PipelineKind, launch_id: int) -> None:
        task = self._loop.create_task(
            self._drive(kind, launch_id),
            name=f"{self.run_id}:{kind.value}:{launch_id}"
        )
        self._tasks[kind] = task

    async def _drive(self, kind: PipelineKind, launch_id: int) -> None:
        """Attempt loop of one launch: run, back off, re-run, settle."""
        config = self.config[kind]
        attempt = 0
        while True:
            try:
                await self.executor.run(
                    kind,
                    self.context,
                    attempt,
                    self._reporter(kind, launch_id, attempt),
                    config.timeout_seconds
                )
                return
            except PipelineError as error:
                if not self.retry_policy.should_retry(error, attempt, config.max_retries):
                    self._settle_error(kind, launch_id, error)
                    return
                if not self._mark_retrying(kind, launch_id, error):
                    return
                await self.retry_policy.wait(attempt)
                attempt += 1
                if not self._mark_next_attempt(kind, launch_id, attempt):
                    return
            except Exception as e:
                logger.exception(f"[{self.run_id}] {kind.value} crashed")
                self._settle_error(
                    kind, launch_id,
                    UpstreamError(kind=kind.value, reason=str(e), code="UNKNOWN_ERROR")
                )
                return

    def _reporter(self, kind: PipelineKind, launch_id: int, attempt: int):
        def report(
            progress: int,
            result: Optional[Any] = None,
            metadata: Optional[PipelineExecutionMetadata] = None
        ) -> bool:
            return self._report(kind, launch_id, attempt, progress, result, metadata)
        return report

    # -------------------------------------------------------------------------
    # Transitions (all go through _transition)
    # -------------------------------------------------------------------------

    def _report(
        self,
        kind: PipelineKind,
        launch_id: int,
        attempt: int,
        progress: int,
        result: Optional[Any],
        metadata: Optional[PipelineExecutionMetadata]
    ) -> bool:
        def mutate(state: PipelineRunState) -> None:
            if result is not None:
                state.status = PipelineStatus.SUCCESS
                state.result = result
                state.error = None
                state.metadata = metadata
                state.progress_percent = 100
                state.ended_at = datetime.now()
            else:
                state.status = PipelineStatus.LOADING
                state.progress_percent = max(state.progress_percent, min(int(progress), 99))

        return self._transition(kind, launch_id, mutate, attempt=attempt)

    def _mark_retrying(self, kind: PipelineKind, launch_id: int, error: PipelineError) -> bool:
        def mutate(state: PipelineRunState) -> None:
            state.status = PipelineStatus.RETRYING
            state.error = _error_info(error)

        logger.info(f"[{self.run_id}] {kind.value} will retry: {error.message}")
        return self._transition(kind, launch_id, mutate)

    def _mark_next_attempt(self, kind: PipelineKind, launch_id: int, attempt: int) -> bool:
        def mutate(state: PipelineRunState) -> None:
            state.status = PipelineStatus.LOADING
            state.attempt = attempt
            state.error = None

        return self._transition(kind, launch_id, mutate)

    def _settle_error(self, kind: PipelineKind, launch_id: int, error: PipelineError) -> bool:
        def mutate(state: PipelineRunState) -> None:
            state.status = PipelineStatus.ERROR
            state.error = _error_info(error)
            state.result = None
            state.progress_percent = 100
            state.ended_at = datetime.now()

        logger.warning(f"[{self.run_id}] {kind.value} failed: {error.message}")
        return self._transition(kind, launch_id, mutate)

    def _transition(
        self,
        kind: PipelineKind,
        launch_id: int,
        mutate: Callable[[PipelineRunState], None],
        attempt: Optional[int] = None
    ) -> bool:
        """
        Apply one state change and publish it.

        Returns False (and changes nothing) when the launch is stale, the
        kind already settled, or the run was cancelled.
        """
        with self._lock:
            if self._table.run_state == RunState.CANCELLED:
                return False
            if self._launch_ids.get(kind) != launch_id:
                return False
            state = self._table.pipelines[kind]
            if state.status.is_terminal:
                return False
            if attempt is not None and attempt != state.attempt:
                return False

            mutate(state)
            self._touch()

            completed = False
            if self._table.run_state == RunState.RUNNING and self._table.all_enabled_terminal():
                self._table.run_state = RunState.COMPLETED
                completed = not self._complete_fired
                self._complete_fired = True
                self._finished.set()
                logger.info(
                    f"[{self.run_id}] Run completed: "
                    f"{len(self._table.kinds_with_status(PipelineStatus.SUCCESS))}/"
                    f"{len(self._table.enabled)} pipelines succeeded"
                )
            snapshot = self._table.model_copy(deep=True)

        self._publish(snapshot, completed=completed)
        return True

    def _touch(self) -> None:
        self._table.recompute_progress()
        self._table.last_updated = datetime.now()

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def _publish(self, snapshot: RunStatusTable, completed: bool) -> None:
        for callback in list(self._update_subscribers.values()):
            self._notify(callback, snapshot)
        if completed:
            for callback in list(self._complete_subscribers.values()):
                self._notify(callback, snapshot)

    def _notify(self, callback: Subscriber, snapshot: RunStatusTable) -> None:
        """Invoke one observer (sync or async). Observer failures are isolated."""
        if inspect.iscoroutinefunction(callback):
            task = self._loop.create_task(self._anotify(callback, snapshot))
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_tasks.discard)
            return
        try:
            callback(snapshot)
        except Exception as e:
            logger.warning(f"[{self.run_id}] Status callback failed: {e}")

    async def _anotify(self, callback: AsyncStatusCallback, snapshot: RunStatusTable) -> None:
        try:
            await callback(snapshot)
        except Exception as e:
            logger.warning(f"[{self.run_id}] Status callback failed: {e}")


class AnalysisOrchestrator:
    """
    Process-wide entry point: starts runs and keeps the latest run per session.

    Design Principles:
    -----------------
    1. Dependency Injection: client, audit store, retry policy injected
    2. Single Responsibility: coordinates, never computes insights
    3. Open/Closed: new pipeline kinds only touch the registry

    Usage:
        orchestrator = create_orchestrator()
        run = orchestrator.start(context)
        unsubscribe = orchestrator.subscribe(run, on_update=print)
        table = await run.wait()
        actions = orchestrator.get_actions(table)
    """

    def __init__(
        self,
        client: AnalysisClientProtocol,
        settings: Optional[Settings] = None,
        registry: Optional[PipelineRegistry] = None,
        audit_store: Optional[AuditStoreProtocol] = None,
        retry_policy: Optional[RetryPolicy] = None,
        actions_engine: Optional[SmartActionsEngine] = None
    ):
        self.settings = settings or get_settings()
        self.registry = registry or create_default_registry()
        self.executor = PipelineExecutor(client=client, registry=self.registry, audit_store=audit_store)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.actions_engine = actions_engine or SmartActionsEngine(settings=self.settings)
        self._runs: Dict[str, AnalysisRun] = {}

        unknown = [kind.value for kind in self.settings.pipelines if kind not in self.registry]
        if unknown:
            raise ConfigurationError(
                "pipelines",
                f"defaults configured for unregistered pipeline(s): {', '.join(unknown)}"
            )

    def start(self, context: AnalysisContext) -> AnalysisRun:
        """
        Start analysis for a session.

        If the session already has a running run, that run is returned
        unchanged. A finished run for the same session is replaced.

        Raises:
            UnknownPipelineError: The config names an unregistered kind
            NoPipelinesEnabledError: Every pipeline is disabled
        """
        existing = self._runs.get(context.session_id)
        if existing is not None and existing.state == RunState.RUNNING:
            logger.info(
                f"[{existing.run_id}] Session {context.session_id} already running, "
                f"returning existing run"
            )
            return existing

        config = self.registry.validate_config(
            context.config or default_pipeline_config(self.settings)
        )
        enabled = self.registry.list_enabled(config)
        if not enabled:
            raise NoPipelinesEnabledError(context.session_id)

        run = AnalysisRun(
            context=context,
            config=config,
            enabled=enabled,
            registry=self.registry,
            executor=self.executor,
            retry_policy=self.retry_policy,
        )
        if existing is not None:
            self.actions_engine.invalidate(existing.run_id)
        self._runs[context.session_id] = run
        run.start()
        return run

    def get_run(self, session_id: str) -> AnalysisRun:
        """
        Raises:
            RunNotFoundError: No run tracked for this session
        """
        run = self._runs.get(session_id)
        if run is None:
            raise RunNotFoundError(session_id)
        return run

    def discard(self, session_id: str) -> None:
        """Forget a session's run, cancelling it if still running."""
        run = self._runs.pop(session_id, None)
        if run is not None and run.state == RunState.RUNNING:
            run.cancel()
        if run is not None:
            self.actions_engine.invalidate(run.run_id)

    @property
    def runs(self) -> List[AnalysisRun]:
        return list(self._runs.values())

    # Thin delegations so callers can work with the orchestrator alone

    def subscribe(
        self,
        run: AnalysisRun,
        on_update: Optional[Subscriber] = None,
        on_complete: Optional[Subscriber] = None
    ) -> Callable[[], None]:
        return run.subscribe(on_update=on_update, on_complete=on_complete)

    def retry_one(self, run: AnalysisRun, kind: PipelineKind) -> None:
        run.retry_one(kind)

    def retry_all(self, run: AnalysisRun) -> List[PipelineKind]:
        return run.retry_all()

    def cancel(self, run: AnalysisRun) -> None:
        run.cancel()

    def get_status(self, run: AnalysisRun) -> RunStatusTable:
        return run.get_status()

    def get_actions(self, table: RunStatusTable) -> List[SmartAction]:
        """Prioritized actions derived from a status snapshot."""
        return self.actions_engine.get_actions(table)


def create_orchestrator(
    settings: Optional[Settings] = None,
    client: Optional[AnalysisClientProtocol] = None,
    audit_store: Optional[AuditStoreProtocol] = None,
    use_mock: bool = False
) -> AnalysisOrchestrator:
    """
    Factory function to create a configured orchestrator.

    Args:
        settings: Optional custom settings. Uses default if not provided.
        client: Upstream analysis client. Built from settings if not provided.
        audit_store: Where audit records go. None disables persistence.
        use_mock: Use the canned mock client instead of Ollama

    Example:
        orchestrator = create_orchestrator(use_mock=True)
        run = orchestrator.start(context)
    """
    settings = settings or get_settings()
    if client is None:
        client = create_analysis_client(settings=settings, use_mock=use_mock)

    return AnalysisOrchestrator(client=client, settings=settings, audit_store=audit_store)
