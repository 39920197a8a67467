"""Resource builders for Tomcat managed resources."""

from typing import Any, Dict, NamedTuple, Optional, Tuple

from . import constants as C
from .errors import ConfigurationError


class DescriptorKey(NamedTuple):
    """Identity a Tomcat descriptor is serialized on."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def descriptor_key(body: Dict[str, Any]) -> DescriptorKey:
    """Key of a descriptor (or of a managed resource, which shares it)."""
    metadata = body.get("metadata") or {}
    return DescriptorKey(metadata["namespace"], metadata["name"])


def build_labels(name: str) -> Dict[str, str]:
    """Build metadata labels for a managed resource."""
    return {
        C.LABEL_MANAGED_BY: C.OPERATOR_NAME,
        C.LABEL_CREATED_BY: name,
    }


def build_selector_labels(name: str) -> Dict[str, str]:
    """Labels shared by the pod template, the Deployment selector and the Service selector."""
    return {C.LABEL_APP: name}


def build_owner_reference(owner: Dict[str, Any]) -> Dict[str, Any]:
    """Build owner reference for garbage collection."""
    return {
        "apiVersion": f"{C.API_GROUP}/{C.API_VERSION}",
        "kind": C.KIND,
        "name": owner["metadata"]["name"],
        "uid": owner["metadata"]["uid"],
        "controller": True,
    }


def build_image(version: str) -> str:
    return f"{C.TOMCAT_BASE_IMAGE}:{version}"


def _require(manifest: Dict[str, Any], path: str, template_id: str) -> Any:
    """Walk a dotted path through a template, failing on any missing mapping."""
    node: Any = manifest
    for part in path.split("."):
        if not isinstance(node, dict) or node.get(part) is None:
            raise ConfigurationError(f"Template {template_id} is missing {path}")
        node = node[part]
    return node


def _apply_metadata(manifest: Dict[str, Any], owner: Dict[str, Any], template_id: str) -> None:
    name = owner["metadata"]["name"]
    metadata = manifest.setdefault("metadata", {})
    if not isinstance(metadata, dict):
        raise ConfigurationError(f"Template {template_id} has a malformed metadata block")
    metadata["name"] = name
    metadata["namespace"] = owner["metadata"]["namespace"]
    metadata["labels"] = {**(metadata.get("labels") or {}), **build_labels(name)}
    if owner["metadata"].get("uid"):
        metadata["ownerReferences"] = [build_owner_reference(owner)]


def build_deployment(owner: Dict[str, Any], template: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay a descriptor onto the baseline Deployment template."""
    template_id = C.DEPLOYMENT_TEMPLATE
    name = owner["metadata"]["name"]
    spec = owner.get("spec") or {}

    match_labels = _require(template, "spec.selector.matchLabels", template_id)
    pod_metadata = _require(template, "spec.template.metadata", template_id)
    containers = _require(template, "spec.template.spec.containers", template_id)
    if not isinstance(containers, list) or not containers or not isinstance(containers[0], dict):
        raise ConfigurationError(f"Template {template_id} must declare at least one container")

    _apply_metadata(template, owner, template_id)

    selector = build_selector_labels(name)
    match_labels.update(selector)
    pod_metadata["labels"] = {**(pod_metadata.get("labels") or {}), **selector}

    template["spec"]["replicas"] = int(spec.get("replicas", C.DEFAULT_REPLICAS))
    containers[0]["image"] = build_image(str(spec.get("version", C.DEFAULT_VERSION)))
    return template


def build_service(owner: Dict[str, Any], template: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay a descriptor onto the baseline Service template."""
    template_id = C.SERVICE_TEMPLATE
    service_spec = _require(template, "spec", template_id)
    if not isinstance(service_spec, dict):
        raise ConfigurationError(f"Template {template_id} has a malformed spec block")

    _apply_metadata(template, owner, template_id)

    # Must match the Deployment's pod template labels exactly
    service_spec["selector"] = build_selector_labels(owner["metadata"]["name"])
    return template


def build_desired(
    owner: Dict[str, Any],
    templates: Dict[str, Dict[str, Any]],
) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Desired (Deployment, Service) for a descriptor.

    ``templates`` maps template ids to baseline manifests; they are treated as
    read-only and copied before being overlaid.
    """
    import copy

    deployment_template = _template(templates, C.DEPLOYMENT_TEMPLATE)
    service_template = _template(templates, C.SERVICE_TEMPLATE)
    return (
        build_deployment(owner, copy.deepcopy(deployment_template)),
        build_service(owner, copy.deepcopy(service_template)),
    )


def _template(templates: Dict[str, Dict[str, Any]], template_id: str) -> Dict[str, Any]:
    template: Optional[Dict[str, Any]] = templates.get(template_id)
    if not isinstance(template, dict):
        raise ConfigurationError(f"No baseline manifest loaded for {template_id}")
    return template
