"""Baseline manifest templates for the managed Deployment and Service."""

import copy
import functools
import logging
import os
from importlib import resources as importlib_resources
from typing import Any, Dict, Optional

import yaml

from . import constants as C
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=None)
def _read_template(template_id: str, template_dir: Optional[str]) -> Dict[str, Any]:
    if template_dir:
        path = os.path.join(template_dir, template_id)
        logger.info(f"Loading manifest template {path}")
        try:
            with open(path, encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read template {path}: {e}") from e
    else:
        resource = importlib_resources.files(__package__).joinpath("manifests").joinpath(template_id)
        try:
            text = resource.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot find packaged template {template_id}") from e

    try:
        manifest = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Template {template_id} is not valid YAML: {e}") from e

    if not isinstance(manifest, dict):
        raise ConfigurationError(f"Template {template_id} must contain a single mapping")
    return manifest


def load_template(template_id: str, template_dir: Optional[str] = None) -> Dict[str, Any]:
    """Load a baseline manifest by file name.

    Each template is read and parsed once; every call returns a private
    deep copy so callers may overlay fields freely.
    """
    if template_dir is None:
        template_dir = C.TEMPLATE_DIR
    return copy.deepcopy(_read_template(template_id, template_dir))


def load_templates(template_dir: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    """Load both baseline manifests keyed by template id."""
    return {
        C.DEPLOYMENT_TEMPLATE: load_template(C.DEPLOYMENT_TEMPLATE, template_dir),
        C.SERVICE_TEMPLATE: load_template(C.SERVICE_TEMPLATE, template_dir),
    }
