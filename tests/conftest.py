"""
Shared fixtures: an in-memory cluster implementing the ClusterClient capability.
"""

import asyncio
import collections
import copy
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import pytest

from tomcat_operator import constants as C
from tomcat_operator.cluster import ManagedKind
from tomcat_operator.errors import StaleWriteConflict, TransientClusterError
from tomcat_operator.resources import DescriptorKey


class FakeCluster:
    """Thread-safe fake of ClusterClient that records every mutation."""

    def __init__(self, write_delay: float = 0.0):
        self.write_delay = write_delay
        self.objects: Dict[Tuple[ManagedKind, str, str], Dict[str, Any]] = {}
        self.descriptors: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.mutations: List[Tuple[str, ManagedKind, str, str]] = []
        self.status_writes: List[Tuple[str, str, Dict[str, Any]]] = []
        self.watch_events: List[Tuple[str, Dict[str, Any]]] = []
        self.watch_calls = 0
        # Number of replace calls to reject with a conflict, per identity
        self.pending_conflicts: Dict[Tuple[ManagedKind, str, str], int] = collections.Counter()
        # Exceptions raised by the next get_descriptor calls, in order
        self.descriptor_errors: List[Exception] = []
        self.max_concurrent_writes: Dict[Tuple[ManagedKind, str, str], int] = collections.Counter()
        self._in_flight: Dict[Tuple[ManagedKind, str, str], int] = collections.Counter()
        self._version = 0
        self._lock = threading.Lock()

    # -- helpers for tests -------------------------------------------------

    def add_tomcat(self, namespace: str, name: str, replicas: int = 1, version: str = "9.0",
                   uid: str = "uid-1", status: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        body = {
            "apiVersion": f"{C.API_GROUP}/{C.API_VERSION}",
            "kind": C.KIND,
            "metadata": {"namespace": namespace, "name": name, "uid": uid},
            "spec": {"replicas": replicas, "version": version},
        }
        if status is not None:
            body["status"] = status
        self.descriptors[(namespace, name)] = body
        return body

    def mark_deleted(self, namespace: str, name: str) -> None:
        self.descriptors[(namespace, name)]["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"

    def set_ready(self, namespace: str, name: str, ready: int) -> None:
        with self._lock:
            deployment = self.objects[(ManagedKind.WORKLOAD, namespace, name)]
            deployment["status"] = {"readyReplicas": ready, "replicas": ready}

    def live(self, kind: ManagedKind, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def mutations_of(self, kind: ManagedKind) -> List[str]:
        return [verb for verb, k, _, _ in self.mutations if k is kind]

    # -- ClusterClient capability -------------------------------------------

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _begin_write(self, ident):
        with self._lock:
            self._in_flight[ident] += 1
            self.max_concurrent_writes[ident] = max(self.max_concurrent_writes[ident], self._in_flight[ident])
        if self.write_delay:
            time.sleep(self.write_delay)

    def _end_write(self, ident):
        with self._lock:
            self._in_flight[ident] -= 1

    def get(self, kind, namespace, name):
        with self._lock:
            return self.live(kind, namespace, name)

    def create(self, kind, namespace, body):
        ident = (kind, namespace, body["metadata"]["name"])
        self._begin_write(ident)
        try:
            with self._lock:
                if ident in self.objects:
                    raise StaleWriteConflict(f"{kind.value} {namespace}/{ident[2]} already exists")
                obj = copy.deepcopy(body)
                obj["metadata"]["resourceVersion"] = self._next_version()
                obj["metadata"]["uid"] = f"{kind.value.lower()}-{ident[2]}"
                if kind is ManagedKind.SERVICE:
                    obj["spec"]["clusterIP"] = "10.0.0.10"
                self.objects[ident] = obj
                self.mutations.append(("create", kind, namespace, ident[2]))
                return copy.deepcopy(obj)
        finally:
            self._end_write(ident)

    def replace(self, kind, namespace, name, body):
        ident = (kind, namespace, name)
        self._begin_write(ident)
        try:
            with self._lock:
                if self.pending_conflicts[ident] > 0:
                    self.pending_conflicts[ident] -= 1
                    # Someone else wrote in between
                    self.objects[ident]["metadata"]["resourceVersion"] = self._next_version()
                    raise StaleWriteConflict(f"{kind.value} {namespace}/{name} changed")
                current = self.objects.get(ident)
                if current is None:
                    raise TransientClusterError(f"{kind.value} {namespace}/{name} not found")
                if body["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
                    raise StaleWriteConflict(f"{kind.value} {namespace}/{name} changed")
                obj = copy.deepcopy(body)
                obj["metadata"]["resourceVersion"] = self._next_version()
                self.objects[ident] = obj
                self.mutations.append(("replace", kind, namespace, name))
                return copy.deepcopy(obj)
        finally:
            self._end_write(ident)

    def delete(self, kind, namespace, name):
        with self._lock:
            if self.objects.pop((kind, namespace, name), None) is None:
                return False
            self.mutations.append(("delete", kind, namespace, name))
            return True

    def watch(self, kind, label_selector, timeout_seconds=None):
        with self._lock:
            self.watch_calls += 1
            events, self.watch_events = self.watch_events, []
        for event in events:
            yield event
        # Idle stream that ends quickly so the caller reopens it
        time.sleep(0.01)

    def get_descriptor(self, namespace, name):
        with self._lock:
            if self.descriptor_errors:
                raise self.descriptor_errors.pop(0)
            body = self.descriptors.get((namespace, name))
            return copy.deepcopy(body) if body is not None else None

    def update_descriptor_status(self, namespace, name, status):
        with self._lock:
            self.status_writes.append((namespace, name, dict(status)))
            body = self.descriptors.get((namespace, name))
            if body is None:
                return None
            body.setdefault("status", {}).update(status)
            return copy.deepcopy(body)


async def wait_until(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def shop_key():
    return DescriptorKey("default", "shop")
