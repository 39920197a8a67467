"""Per-descriptor reconcile scheduling.

Every Tomcat descriptor key moves through ``Idle -> Queued -> Reconciling``.
A key sits in the work queue at most once, so two workers never reconcile
the same descriptor at the same time, while different descriptors proceed
in parallel on the worker pool. Triggers that arrive while a key is queued
or reconciling are coalesced into a single follow-up pass. Failed passes
are re-queued with capped exponential backoff; nothing that happens inside
a pass can stop the engine.

Cluster calls are blocking, so each pass runs in a worker thread via
``asyncio.to_thread`` and the event loop keeps dispatching triggers.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from . import constants as C
from .cluster import ClusterClient
from .errors import TomcatOperatorError
from .reconciler import ResourceReconciler
from .resources import DescriptorKey, build_desired
from .status import StatusSynchronizer
from .templates import load_templates
from .watch import SecondaryWatchBridge

logger = logging.getLogger(__name__)


class KeyState(enum.Enum):
    IDLE = "Idle"
    QUEUED = "Queued"
    RECONCILING = "Reconciling"


class OutcomeKind(enum.Enum):
    CONVERGED = "converged"
    REQUEUE = "requeue"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class Outcome:
    """Result of one reconcile pass."""

    kind: OutcomeKind
    delay: Optional[float] = None

    @classmethod
    def converged(cls) -> "Outcome":
        return cls(OutcomeKind.CONVERGED)

    @classmethod
    def requeue(cls, delay: float) -> "Outcome":
        return cls(OutcomeKind.REQUEUE, delay)

    @classmethod
    def terminated(cls) -> "Outcome":
        return cls(OutcomeKind.TERMINATED)


@dataclass
class _Entry:
    state: KeyState = KeyState.IDLE
    dirty: bool = False
    # Resolved by the next pass that starts after they were created
    waiters: List[asyncio.Future] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None


def backoff_delay(failures: int, base: float = C.BACKOFF_BASE_SECONDS,
                  maximum: float = C.BACKOFF_MAX_SECONDS) -> float:
    """Delay before retry number ``failures`` (1-based)."""
    return min(maximum, base * (2 ** max(0, failures - 1)))


class ReconcileEngine:
    def __init__(
        self,
        cluster: ClusterClient,
        bridge: Optional[SecondaryWatchBridge] = None,
        templates: Optional[Dict[str, Dict[str, Any]]] = None,
        worker_limit: int = C.WORKER_LIMIT,
        backoff_base: float = C.BACKOFF_BASE_SECONDS,
        backoff_max: float = C.BACKOFF_MAX_SECONDS,
        conflict_retries: int = C.CONFLICT_RETRIES,
    ):
        self.cluster = cluster
        self.bridge = bridge
        self.templates = templates
        self.worker_limit = max(1, worker_limit)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.reconciler = ResourceReconciler(cluster, conflict_retries=conflict_retries)
        self.status = StatusSynchronizer(cluster)

        self._entries: Dict[DescriptorKey, _Entry] = {}
        # Consecutive failed passes per key; only touched by the pass holding the key
        self._failures: Dict[DescriptorKey, int] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._pump: Optional[asyncio.Task] = None
        self._running = 0
        self._drained: Optional[asyncio.Event] = None
        self._accepting = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._drained = asyncio.Event()
        self._drained.set()
        self._accepting = True
        if self.bridge is not None:
            self.bridge.bind(self._loop)
            self._pump = asyncio.create_task(self._pump_secondary(), name="tomcat-secondary-pump")
        self._workers = [
            asyncio.create_task(self._worker(), name=f"tomcat-reconcile-worker-{i}")
            for i in range(self.worker_limit)
        ]
        logger.info(f"Reconcile engine started with {self.worker_limit} workers")

    async def shutdown(self) -> None:
        """Stop accepting triggers and let in-flight passes finish."""
        if not self._accepting:
            return
        self._accepting = False
        logger.info("Reconcile engine shutting down")

        if self.bridge is not None:
            await asyncio.to_thread(self.bridge.stop, C.WATCH_STOP_SECONDS)
        if self._pump is not None:
            self._pump.cancel()
        for entry in self._entries.values():
            if entry.timer is not None:
                entry.timer.cancel()
                entry.timer = None

        while self._running:
            await self._drained.wait()

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, *([self._pump] if self._pump else []),
                             return_exceptions=True)
        self._workers = []

        for entry in self._entries.values():
            self._resolve(entry.waiters, None)
            entry.waiters = []
        logger.info("Reconcile engine stopped")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def trigger(self, key: DescriptorKey) -> "asyncio.Future[Optional[Outcome]]":
        """Request a reconcile pass for ``key``.

        Must be called on the engine's event loop. The returned future
        resolves to the outcome of the next pass that starts after this
        call, or to ``None`` if the engine shuts down first.
        """
        waiter = self._loop.create_future()
        if not self._accepting:
            logger.debug(f"Engine stopped, ignoring trigger for Tomcat {key}")
            waiter.set_result(None)
            return waiter

        entry = self._entries.setdefault(key, _Entry())
        entry.waiters.append(waiter)
        if entry.state is KeyState.IDLE:
            entry.state = KeyState.QUEUED
            self._queue.put_nowait(key)
        elif entry.state is KeyState.RECONCILING:
            entry.dirty = True
            logger.debug(f"Tomcat {key} is reconciling, follow-up pass scheduled")
        else:
            logger.debug(f"Tomcat {key} already queued, trigger coalesced")
        return waiter

    def state(self, key: DescriptorKey) -> KeyState:
        entry = self._entries.get(key)
        return entry.state if entry else KeyState.IDLE

    async def _pump_secondary(self) -> None:
        async for trigger in self.bridge.triggers():
            self.trigger(trigger.key)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self) -> None:
        while True:
            key = await self._queue.get()
            try:
                await self._process(key)
            finally:
                self._queue.task_done()

    async def _process(self, key: DescriptorKey) -> None:
        entry = self._entries.get(key)
        if entry is None or not self._accepting:
            return

        entry.state = KeyState.RECONCILING
        entry.dirty = False
        waiters, entry.waiters = entry.waiters, []
        self._running += 1
        self._drained.clear()
        try:
            outcome = await asyncio.to_thread(self.reconcile, key)
            self._resolve(waiters, outcome)
            self._after_pass(key, entry, outcome)
        finally:
            self._running -= 1
            if not self._running:
                self._drained.set()

    def _after_pass(self, key: DescriptorKey, entry: _Entry, outcome: Outcome) -> None:
        if not self._accepting:
            entry.state = KeyState.IDLE
        elif outcome.kind is OutcomeKind.REQUEUE:
            # Triggers that arrived meanwhile ride along with the retry
            entry.state = KeyState.QUEUED
            entry.dirty = False
            entry.timer = self._loop.call_later(outcome.delay, self._requeue, key)
        elif entry.dirty:
            entry.state = KeyState.QUEUED
            entry.dirty = False
            self._queue.put_nowait(key)
        else:
            entry.state = KeyState.IDLE

        if entry.state is KeyState.IDLE and not entry.waiters:
            self._entries.pop(key, None)

    def _requeue(self, key: DescriptorKey) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.timer = None
        if self._accepting and entry.state is KeyState.QUEUED:
            self._queue.put_nowait(key)

    @staticmethod
    def _resolve(waiters: List[asyncio.Future], outcome: Optional[Outcome]) -> None:
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(outcome)

    # ------------------------------------------------------------------
    # One pass
    # ------------------------------------------------------------------

    def reconcile(self, key: DescriptorKey) -> Outcome:
        """Run one synchronous reconcile pass for ``key``.

        Never raises: every failure becomes a requeue with backoff.
        """
        try:
            if self.bridge is not None:
                self.bridge.subscribe()

            descriptor = self.cluster.get_descriptor(key.namespace, key.name)
            if descriptor is None or (descriptor.get("metadata") or {}).get("deletionTimestamp"):
                logger.info(f"Tomcat {key} is being deleted, removing managed resources")
                self.reconciler.delete_managed(key)
                self._failures.pop(key, None)
                return Outcome.terminated()

            logger.info(f"Reconciling Tomcat {key}")
            if self.templates is None:
                self.templates = load_templates()
            deployment, service = build_desired(descriptor, self.templates)
            live_deployment = self.reconciler.apply_workload(deployment)
            self.reconciler.apply_service(service)
            self.status.sync(descriptor, live_deployment)
            self._failures.pop(key, None)
            return Outcome.converged()

        except TomcatOperatorError as e:
            delay = self._next_delay(key)
            logger.warning(f"Reconciling Tomcat {key} failed, retrying in {delay:.1f}s: {e}")
            return Outcome.requeue(delay)
        except Exception as e:
            delay = self._next_delay(key)
            logger.error(f"Unexpected error reconciling Tomcat {key}, retrying in {delay:.1f}s: {e}",
                         exc_info=True)
            return Outcome.requeue(delay)

    def _next_delay(self, key: DescriptorKey) -> float:
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        return backoff_delay(failures, self.backoff_base, self.backoff_max)
