"""Error types raised while reconciling Tomcat resources."""


class TomcatOperatorError(Exception):
    """Base class for errors handled by the reconcile engine."""


class TransientClusterError(TomcatOperatorError):
    """Network, throttling or server-side failure talking to the cluster API."""


class StaleWriteConflict(TransientClusterError):
    """A write was rejected because the live object changed underneath it.

    Always resolved by re-reading the live object, never by forcing the write.
    """


class ConfigurationError(TomcatOperatorError):
    """A baseline manifest is malformed or was rejected by the platform."""
