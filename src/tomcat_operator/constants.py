"""Default values and constants for tomcat-operator."""

import os

# API Group and Version
API_GROUP = "tomcatoperator.io"
API_VERSION = "v1"
PLURAL = "tomcats"
KIND = "Tomcat"

# Operator name
OPERATOR_NAME = "tomcat-operator"

# =============================================================================
# Images
# =============================================================================

# Image repository; the descriptor's spec.version is appended as the tag
TOMCAT_BASE_IMAGE = os.getenv("TOMCAT_BASE_IMAGE", "tomcat")

# =============================================================================
# Descriptor defaults
# =============================================================================

DEFAULT_REPLICAS = 1
DEFAULT_VERSION = "latest"

# =============================================================================
# Manifest templates
# =============================================================================

# Directory overriding the packaged deployment.yaml / service.yaml
TEMPLATE_DIR = os.getenv("TOMCAT_TEMPLATE_DIR")

DEPLOYMENT_TEMPLATE = "deployment.yaml"
SERVICE_TEMPLATE = "service.yaml"

# =============================================================================
# Reconcile engine
# =============================================================================

WORKER_LIMIT = int(os.getenv("TOMCAT_WORKER_LIMIT", "4"))
CHANNEL_SIZE = int(os.getenv("TOMCAT_CHANNEL_SIZE", "64"))
BACKOFF_BASE_SECONDS = float(os.getenv("TOMCAT_BACKOFF_BASE_SECONDS", "1.0"))
BACKOFF_MAX_SECONDS = float(os.getenv("TOMCAT_BACKOFF_MAX_SECONDS", "60.0"))

# Attempts for a single apply before a write conflict is handed to the engine
CONFLICT_RETRIES = int(os.getenv("TOMCAT_CONFLICT_RETRIES", "3"))

# =============================================================================
# Secondary watch
# =============================================================================

WATCH_TIMEOUT_SECONDS = int(os.getenv("TOMCAT_WATCH_TIMEOUT_SECONDS", "300"))
WATCH_RETRY_SECONDS = float(os.getenv("TOMCAT_WATCH_RETRY_SECONDS", "5"))

# How long shutdown waits for the watch thread before leaving it to its stream timeout
WATCH_STOP_SECONDS = float(os.getenv("TOMCAT_WATCH_STOP_SECONDS", "5"))

# =============================================================================
# Labels
# =============================================================================

LABEL_MANAGED_BY = "app.kubernetes.io/managed-by"
LABEL_CREATED_BY = "created-by"
LABEL_APP = "app"

MANAGED_SELECTOR = f"{LABEL_MANAGED_BY}={OPERATOR_NAME}"
