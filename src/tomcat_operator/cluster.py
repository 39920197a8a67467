"""Thin capability object over the Kubernetes API used by the reconciler.

Everything the operator reads or writes in the cluster goes through
``ClusterClient`` so tests can substitute an in-memory implementation.
Objects cross this boundary as plain manifest dicts (camelCase keys, the
same shape as the YAML templates), never as kubernetes model classes.
"""

import enum
import logging
from typing import Any, Dict, Iterator, Optional, Tuple

import kubernetes
import urllib3
from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from . import constants as C
from .errors import ConfigurationError, StaleWriteConflict, TransientClusterError

logger = logging.getLogger(__name__)


class ManagedKind(enum.Enum):
    """The two resource kinds the operator creates per descriptor."""

    WORKLOAD = "Deployment"
    SERVICE = "Service"


def get_k8s_clients() -> Dict[str, Any]:
    """Get Kubernetes API clients."""
    try:
        kubernetes.config.load_incluster_config()
    except kubernetes.config.ConfigException:
        kubernetes.config.load_kube_config()

    return {
        "core": client.CoreV1Api(),
        "apps": client.AppsV1Api(),
        "custom": client.CustomObjectsApi(),
    }


def translate_api_exception(e: ApiException, action: str) -> Exception:
    """Map an API failure onto the operator's error taxonomy."""
    message = f"{action} failed: {e.status} {e.reason}"
    if e.status == 409:
        return StaleWriteConflict(message)
    if e.status in (400, 422):
        return ConfigurationError(message)
    return TransientClusterError(message)


class ClusterClient:
    """Get/create/replace/delete/watch for managed kinds, plus descriptor status."""

    def __init__(self, clients: Dict[str, Any]):
        self.clients = clients
        self._serializer = client.ApiClient()

    @classmethod
    def from_environment(cls) -> "ClusterClient":
        return cls(get_k8s_clients())

    def _ops(self, kind: ManagedKind) -> Dict[str, Any]:
        if kind is ManagedKind.WORKLOAD:
            apps = self.clients["apps"]
            return {
                "read": apps.read_namespaced_deployment,
                "create": apps.create_namespaced_deployment,
                "replace": apps.replace_namespaced_deployment,
                "delete": apps.delete_namespaced_deployment,
                "list": apps.list_deployment_for_all_namespaces,
            }
        core = self.clients["core"]
        return {
            "read": core.read_namespaced_service,
            "create": core.create_namespaced_service,
            "replace": core.replace_namespaced_service,
            "delete": core.delete_namespaced_service,
            "list": core.list_service_for_all_namespaces,
        }

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self._serializer.sanitize_for_serialization(obj)

    def get(self, kind: ManagedKind, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Read a live resource; ``None`` when it does not exist."""
        action = f"Read {kind.value} {namespace}/{name}"
        try:
            return self._to_dict(self._ops(kind)["read"](name, namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_exception(e, action) from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientClusterError(f"{action} failed: {e}") from e

    def create(self, kind: ManagedKind, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        action = f"Create {kind.value} {namespace}/{body['metadata']['name']}"
        try:
            return self._to_dict(self._ops(kind)["create"](namespace, body))
        except ApiException as e:
            raise translate_api_exception(e, action) from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientClusterError(f"{action} failed: {e}") from e

    def replace(self, kind: ManagedKind, namespace: str, name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Replace a live resource; ``body`` must carry the resourceVersion it was read at."""
        action = f"Replace {kind.value} {namespace}/{name}"
        try:
            return self._to_dict(self._ops(kind)["replace"](name, namespace, body))
        except ApiException as e:
            raise translate_api_exception(e, action) from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientClusterError(f"{action} failed: {e}") from e

    def delete(self, kind: ManagedKind, namespace: str, name: str) -> bool:
        """Request deletion; ``False`` when the resource was already gone."""
        action = f"Delete {kind.value} {namespace}/{name}"
        try:
            self._ops(kind)["delete"](
                name, namespace,
                body=client.V1DeleteOptions(propagation_policy="Background"),
            )
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise translate_api_exception(e, action) from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientClusterError(f"{action} failed: {e}") from e

    def watch(
        self,
        kind: ManagedKind,
        label_selector: str,
        timeout_seconds: int = C.WATCH_TIMEOUT_SECONDS,
    ) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Stream ``(ADDED|MODIFIED|DELETED, manifest)`` across all namespaces.

        The stream ends after ``timeout_seconds``; callers reopen it.
        """
        w = watch.Watch()
        try:
            for event in w.stream(
                self._ops(kind)["list"],
                label_selector=label_selector,
                timeout_seconds=timeout_seconds,
            ):
                if event["type"] == "ERROR":
                    raise TransientClusterError(f"Watch on {kind.value} failed: {event.get('raw_object')}")
                yield event["type"], self._to_dict(event["object"])
        except ApiException as e:
            raise translate_api_exception(e, f"Watch {kind.value}") from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientClusterError(f"Watch {kind.value} failed: {e}") from e
        finally:
            w.stop()

    def get_descriptor(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Read a Tomcat descriptor; ``None`` when it does not exist."""
        action = f"Read {C.KIND} {namespace}/{name}"
        try:
            return self.clients["custom"].get_namespaced_custom_object(
                group=C.API_GROUP,
                version=C.API_VERSION,
                namespace=namespace,
                plural=C.PLURAL,
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise translate_api_exception(e, action) from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientClusterError(f"{action} failed: {e}") from e

    def update_descriptor_status(
        self, namespace: str, name: str, status: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Patch only the status subresource of a descriptor."""
        action = f"Update status of {C.KIND} {namespace}/{name}"
        try:
            return self.clients["custom"].patch_namespaced_custom_object_status(
                group=C.API_GROUP,
                version=C.API_VERSION,
                namespace=namespace,
                plural=C.PLURAL,
                name=name,
                body={"status": status},
            )
        except ApiException as e:
            if e.status == 404:
                logger.info(f"{C.KIND} {namespace}/{name} is gone, skipping status update")
                return None
            raise translate_api_exception(e, action) from e
        except urllib3.exceptions.HTTPError as e:
            raise TransientClusterError(f"{action} failed: {e}") from e
