"""Secondary watch on managed Deployments.

Readiness changes on a Deployment (pods becoming ready, a rollout finishing)
do not touch the Tomcat descriptor, so the primary watch never sees them.
The bridge watches Deployments carrying the operator's managed-by label in a
background thread and turns every event into a reconcile trigger for the
descriptor that owns it. Triggers are handed to the event loop through a
bounded channel; a full channel blocks the watch thread until the engine
catches up.
"""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, AsyncIterator, Dict, NamedTuple, Optional

from . import constants as C
from .cluster import ClusterClient, ManagedKind
from .resources import DescriptorKey

logger = logging.getLogger(__name__)


class Trigger(NamedTuple):
    key: DescriptorKey
    change: str


def map_event(change: str, deployment: Dict[str, Any]) -> Optional[Trigger]:
    """Map a Deployment event onto the descriptor that owns it.

    A managed Deployment shares namespace and name with its descriptor.
    Returns ``None`` for Deployments this operator did not create.
    """
    metadata = deployment.get("metadata") or {}
    labels = metadata.get("labels") or {}
    if labels.get(C.LABEL_MANAGED_BY) != C.OPERATOR_NAME:
        return None
    namespace = metadata.get("namespace")
    name = metadata.get("name")
    if not namespace or not name:
        return None
    return Trigger(DescriptorKey(namespace, name), change)


class SecondaryWatchBridge:
    def __init__(
        self,
        cluster: ClusterClient,
        channel_size: int = C.CHANNEL_SIZE,
        watch_timeout: int = C.WATCH_TIMEOUT_SECONDS,
        retry_seconds: float = C.WATCH_RETRY_SECONDS,
    ):
        self.cluster = cluster
        self.channel_size = channel_size
        self.watch_timeout = watch_timeout
        self.retry_seconds = retry_seconds
        self.channel: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach the channel to the event loop that consumes it."""
        self._loop = loop
        self.channel = asyncio.Queue(maxsize=self.channel_size)

    @property
    def subscribed(self) -> bool:
        return self._thread is not None

    def subscribe(self) -> bool:
        """Start watching; safe to call repeatedly and from any thread.

        Returns True only for the call that actually opened the subscription.
        """
        with self._lock:
            if self._thread is not None or self._stopped.is_set():
                return False
            if self._loop is None:
                raise RuntimeError("SecondaryWatchBridge.subscribe() called before bind()")
            self._thread = threading.Thread(
                target=self._run, name="tomcat-deployment-watch", daemon=True
            )
            self._thread.start()
        logger.info(f"Subscribed to Deployment events ({C.MANAGED_SELECTOR})")
        return True

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Ask the watch thread to exit, waiting up to ``timeout`` seconds.

        Returns False if the thread is still running afterwards; it is a
        daemon and ends at the latest when the open stream times out.
        """
        self._stopped.set()
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        if timeout:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Deployment watch still open after {timeout}s, leaving it to time out")
        return not thread.is_alive()

    async def triggers(self) -> AsyncIterator[Trigger]:
        while True:
            yield await self.channel.get()

    def _run(self) -> None:
        while not self._stopped.is_set():
            try:
                for change, deployment in self.cluster.watch(
                    ManagedKind.WORKLOAD,
                    label_selector=C.MANAGED_SELECTOR,
                    timeout_seconds=self.watch_timeout,
                ):
                    if self._stopped.is_set():
                        return
                    trigger = map_event(change, deployment)
                    if trigger is not None:
                        self._publish(trigger)
            except Exception as e:
                logger.warning(f"Deployment watch failed, reopening in {self.retry_seconds}s: {e}",
                               exc_info=True)
                self._stopped.wait(self.retry_seconds)
        logger.info("Deployment watch stopped")

    def _publish(self, trigger: Trigger) -> None:
        logger.debug(f"Deployment {trigger.change} for Tomcat {trigger.key}")
        future = asyncio.run_coroutine_threadsafe(self.channel.put(trigger), self._loop)
        while True:
            try:
                future.result(timeout=1.0)
                return
            except concurrent.futures.TimeoutError:
                if self._stopped.is_set():
                    future.cancel()
                    return
