"""
ocean/infrastructure/errors.py

Fatal, pipeline-aborting errors. Per-node failures are recorded on the Node
instead (see Node.set_error) and never raised.
"""


class InfrastructureError(Exception):
    """A reconciliation step failed; the registry keeps its last consistent state."""


class MissingResourceError(InfrastructureError):
    """A prerequisite resource (VPC, security group, key pair, ...) is not registered."""


class ResourceTimeoutError(InfrastructureError):
    """A bounded wait on a required resource ran out of attempts."""
