"""Errors raised while assembling a blue/green topology."""

from typing import Any


class TopologyError(Exception):
    """Base class for every topology assembly failure."""

    category = "TopologyError"

    def __init__(
        self,
        message: str,
        *,
        entity: str | None = None,
        field: str | None = None,
        expected: Any = None,
        actual: Any = None,
    ) -> None:
        details = []
        if entity is not None:
            details.append(f"entity={entity}")
        if field is not None:
            details.append(f"field={field}")
        if expected is not None:
            details.append(f"expected={expected!r}")
        if actual is not None:
            details.append(f"actual={actual!r}")
        if details:
            message = f"{message} ({', '.join(details)})"
        super().__init__(message)
        self.entity = entity
        self.field = field
        self.expected = expected
        self.actual = actual

    def describe(self) -> str:
        """One-line taxonomy entry, as printed by the CDK app."""
        return f"{self.category}: {type(self).__name__}: {self}"


class ResourceLookupError(TopologyError, LookupError):
    """An external resource could not be resolved."""

    category = "LookupError"


class NetworkNotFound(ResourceLookupError):
    pass


class AmbiguousNetwork(ResourceLookupError):
    pass


class ValidationError(TopologyError, ValueError):
    """A declaration breaks a cross-reference or numeric-range rule."""

    category = "ValidationError"


class InvalidRule(ValidationError):
    pass


class InvalidResourceSpec(ValidationError):
    pass


class PortMismatch(ValidationError):
    pass


class TargetTypeMismatch(ValidationError):
    pass


class WeightSumInvalid(ValidationError):
    pass


class InvalidDesiredCount(ValidationError):
    pass


class ScaleOutOfRange(ValidationError):
    pass


class TargetGroupTaskDefMismatch(ValidationError):
    pass


class InvalidRoutingPolicy(ValidationError):
    pass


class IncompleteTopology(ValidationError):
    pass


class ConflictError(TopologyError):
    """Two declarations claim the same slot."""

    category = "ConflictError"


class DuplicateLogicalName(ConflictError):
    pass


class DuplicateListenerPort(ConflictError):
    pass


class ServiceAlreadyHasPrimary(ConflictError):
    pass


class ServiceAlreadyDeclared(ConflictError):
    pass


class DuplicateLifecycleHook(ConflictError):
    pass
