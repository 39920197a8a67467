"""Create-or-update and delete of the managed Deployment and Service."""

import copy
import logging
from typing import Any, Dict, Optional

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from . import constants as C
from .cluster import ClusterClient, ManagedKind
from .errors import ConfigurationError, StaleWriteConflict
from .resources import DescriptorKey

logger = logging.getLogger(__name__)


def merge_workload(live: Dict[str, Any], desired: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``live`` with the operator-controlled Deployment fields from ``desired``.

    Controlled: replicas, the first container's image, selector match labels,
    pod template labels, metadata labels and the owner reference. Everything
    else stays as the platform left it, including resourceVersion.
    """
    merged = copy.deepcopy(live)
    desired_spec = desired["spec"]
    spec = merged.setdefault("spec", {})

    spec["replicas"] = desired_spec["replicas"]

    selector = spec.setdefault("selector", {})
    selector["matchLabels"] = {
        **(selector.get("matchLabels") or {}),
        **desired_spec["selector"]["matchLabels"],
    }

    pod_template = spec.setdefault("template", {})
    pod_metadata = pod_template.setdefault("metadata", {})
    pod_metadata["labels"] = {
        **(pod_metadata.get("labels") or {}),
        **desired_spec["template"]["metadata"]["labels"],
    }

    desired_container = desired_spec["template"]["spec"]["containers"][0]
    containers = pod_template.setdefault("spec", {}).setdefault("containers", [])
    if containers:
        containers[0]["image"] = desired_container["image"]
    else:
        containers.append(copy.deepcopy(desired_container))

    _merge_metadata_labels(merged, desired)
    _merge_owner_references(merged, desired)
    return merged


def merge_service(live: Dict[str, Any], desired: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of ``live`` with the desired selector, metadata labels and owner reference.

    clusterIP, ports and other platform-assigned fields are preserved.
    """
    merged = copy.deepcopy(live)
    merged.setdefault("spec", {})["selector"] = dict(desired["spec"]["selector"])
    _merge_metadata_labels(merged, desired)
    _merge_owner_references(merged, desired)
    return merged


def _merge_metadata_labels(merged: Dict[str, Any], desired: Dict[str, Any]) -> None:
    metadata = merged.setdefault("metadata", {})
    metadata["labels"] = {
        **(metadata.get("labels") or {}),
        **(desired["metadata"].get("labels") or {}),
    }


def _merge_owner_references(merged: Dict[str, Any], desired: Dict[str, Any]) -> None:
    wanted = desired["metadata"].get("ownerReferences") or []
    if not wanted:
        return
    metadata = merged.setdefault("metadata", {})
    uids = {ref["uid"] for ref in wanted}
    others = [ref for ref in metadata.get("ownerReferences") or [] if ref.get("uid") not in uids]
    metadata["ownerReferences"] = others + copy.deepcopy(wanted)


def foreign_controller(live: Dict[str, Any], desired: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Controller owner reference on ``live`` that is not the desired owner, if any."""
    wanted = {ref["uid"] for ref in desired["metadata"].get("ownerReferences") or []}
    if not wanted:
        return None
    for ref in (live.get("metadata") or {}).get("ownerReferences") or []:
        if ref.get("controller") and ref.get("uid") not in wanted:
            return ref
    return None


def is_managed(live: Dict[str, Any]) -> bool:
    labels = (live.get("metadata") or {}).get("labels") or {}
    return labels.get(C.LABEL_MANAGED_BY) == C.OPERATOR_NAME


_MERGERS = {
    ManagedKind.WORKLOAD: merge_workload,
    ManagedKind.SERVICE: merge_service,
}


class ResourceReconciler:
    """Applies desired manifests against live state. Holds no state of its own."""

    def __init__(self, cluster: ClusterClient, conflict_retries: int = C.CONFLICT_RETRIES):
        self.cluster = cluster
        self._apply_with_retry = retry(
            stop=stop_after_attempt(max(1, conflict_retries)),
            wait=wait_exponential(multiplier=0.1, max=1),
            retry=retry_if_exception_type(StaleWriteConflict),
            before_sleep=before_sleep_log(logger, logging.INFO),
            reraise=True,
        )(self._apply_once)

    def apply_workload(self, desired: Dict[str, Any]) -> Dict[str, Any]:
        """Create or update the Deployment; returns the live object."""
        return self._apply_with_retry(ManagedKind.WORKLOAD, desired)

    def apply_service(self, desired: Dict[str, Any]) -> Dict[str, Any]:
        """Create or update the Service; returns the live object."""
        return self._apply_with_retry(ManagedKind.SERVICE, desired)

    def _apply_once(self, kind: ManagedKind, desired: Dict[str, Any]) -> Dict[str, Any]:
        name = desired["metadata"]["name"]
        namespace = desired["metadata"]["namespace"]

        live = self.cluster.get(kind, namespace, name)
        if live is None:
            logger.info(f"Creating {kind.value} {namespace}/{name}")
            return self.cluster.create(kind, namespace, copy.deepcopy(desired))

        owner = foreign_controller(live, desired)
        if owner is not None:
            raise ConfigurationError(
                f"{kind.value} {namespace}/{name} is controlled by "
                f"{owner.get('kind')} {owner.get('name')}, not taking it over"
            )

        merged = _MERGERS[kind](live, desired)
        if merged == live:
            logger.debug(f"{kind.value} {namespace}/{name} already up to date")
            return live

        logger.info(f"Updating {kind.value} {namespace}/{name}")
        return self.cluster.replace(kind, namespace, name, merged)

    def delete_managed(self, key: DescriptorKey) -> None:
        """Delete both managed resources of a descriptor; absence is success."""
        for kind in ManagedKind:
            live = self.cluster.get(kind, key.namespace, key.name)
            if live is not None and not is_managed(live):
                logger.warning(f"{kind.value} {key} is not managed by {C.OPERATOR_NAME}, leaving it in place")
                continue
            if self.cluster.delete(kind, key.namespace, key.name):
                logger.info(f"Deleted {kind.value} {key}")
            else:
                logger.debug(f"{kind.value} {key} already absent")
