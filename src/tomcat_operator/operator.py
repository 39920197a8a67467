"""Main Kopf operator for Tomcat resources."""

import logging
from typing import Optional

import kopf

from . import constants as C
from .cluster import ClusterClient
from .engine import OutcomeKind, ReconcileEngine
from .errors import ConfigurationError
from .resources import DescriptorKey
from .templates import load_templates
from .watch import SecondaryWatchBridge

logger = logging.getLogger(__name__)

# Created on startup, shared by every handler
ENGINE: Optional[ReconcileEngine] = None


def get_engine() -> ReconcileEngine:
    if ENGINE is None:
        raise kopf.TemporaryError("Reconcile engine is not running yet", delay=C.BACKOFF_BASE_SECONDS)
    return ENGINE


@kopf.on.startup()
async def start_engine(settings: kopf.OperatorSettings, **kwargs):
    """Build the reconcile engine and its secondary Deployment watch."""
    global ENGINE

    # Every log line would otherwise become a k8s Event on the Tomcat
    settings.posting.level = logging.WARNING

    cluster = ClusterClient.from_environment()
    try:
        templates = load_templates()
    except ConfigurationError as e:
        # Reported again on every pass until the templates are fixed
        logger.error(f"Could not load manifest templates: {e}")
        templates = None

    ENGINE = ReconcileEngine(cluster, bridge=SecondaryWatchBridge(cluster), templates=templates)
    await ENGINE.start()


@kopf.on.cleanup()
async def stop_engine(**kwargs):
    global ENGINE
    if ENGINE is not None:
        await ENGINE.shutdown()
        ENGINE = None


@kopf.on.resume(C.API_GROUP, C.API_VERSION, C.PLURAL)
@kopf.on.create(C.API_GROUP, C.API_VERSION, C.PLURAL)
@kopf.on.update(C.API_GROUP, C.API_VERSION, C.PLURAL)
async def tomcat_changed(name, namespace, **kwargs):
    """Schedule a reconcile pass; the engine applies it in the background."""
    logger.info(f"Tomcat {namespace}/{name} changed, scheduling reconcile")
    get_engine().trigger(DescriptorKey(namespace, name))


@kopf.on.delete(C.API_GROUP, C.API_VERSION, C.PLURAL)
async def tomcat_deleted(name, namespace, **kwargs):
    """Hold the finalizer until the managed Deployment and Service are gone."""
    key = DescriptorKey(namespace, name)
    logger.info(f"Tomcat {key} deleted, cleaning up managed resources")

    outcome = await get_engine().trigger(key)
    if outcome is None:
        raise kopf.TemporaryError(f"Operator stopping before Tomcat {key} was cleaned up",
                                  delay=C.BACKOFF_BASE_SECONDS)
    if outcome.kind is not OutcomeKind.TERMINATED:
        raise kopf.TemporaryError(f"Managed resources of Tomcat {key} not removed yet",
                                  delay=outcome.delay or C.BACKOFF_BASE_SECONDS)


def main():
    """Entry point for the operator."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    # Kopf takes over from here
    kopf.run()


if __name__ == "__main__":
    main()
