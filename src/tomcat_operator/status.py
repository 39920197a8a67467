"""Write observed Deployment readiness back into the Tomcat status."""

import logging
from typing import Any, Dict, Optional

from .cluster import ClusterClient
from .resources import descriptor_key

logger = logging.getLogger(__name__)


def observed_ready_replicas(live_workload: Optional[Dict[str, Any]]) -> int:
    """Ready replica count of a live Deployment.

    A missing Deployment or a missing status field counts as zero ready
    replicas rather than as an error.
    """
    if not live_workload:
        return 0
    status = live_workload.get("status") or {}
    return int(status.get("readyReplicas") or 0)


class StatusSynchronizer:
    def __init__(self, cluster: ClusterClient):
        self.cluster = cluster

    def sync(self, descriptor: Dict[str, Any], live_workload: Optional[Dict[str, Any]]) -> bool:
        """Update ``status.readyReplicas`` if it changed; returns whether a write happened.

        Skipping unchanged writes matters: the status write is itself a change
        event and would otherwise keep re-triggering reconciliation.
        """
        key = descriptor_key(descriptor)
        ready = observed_ready_replicas(live_workload)
        current = (descriptor.get("status") or {}).get("readyReplicas")
        if current == ready:
            logger.debug(f"Status of Tomcat {key} unchanged ({ready} ready replicas)")
            return False

        logger.info(f"Updating status of Tomcat {key} to {ready} ready replicas")
        self.cluster.update_descriptor_status(key.namespace, key.name, {"readyReplicas": ready})
        return True
