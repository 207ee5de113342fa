"""
Exception hierarchy.

Configuration errors are raised before any remote call is made. Provider and
executor errors are raised while a graph is being applied or destroyed.
"""
from typing import Dict, Iterable, List, Optional, Sequence


class IamGraphError(Exception):
    """Base class for every error raised by iamgraph."""


# ------------------------------------------------------------------ static
class ConfigurationError(IamGraphError):
    pass


class UnknownResourceKindError(ConfigurationError):
    def __init__(self, kind: str, address: str = ""):
        self.kind = kind
        self.address = address
        where = f" (declared as '{address}')" if address else ""
        super().__init__(f"Unknown resource kind '{kind}'{where}")


class DuplicateResourceError(ConfigurationError):
    def __init__(self, address: str, first_file: str = "", second_file: str = ""):
        self.address = address
        msg = f"Resource '{address}' is declared more than once"
        if first_file or second_file:
            msg += f" ({first_file or '?'}, {second_file or '?'})"
        super().__init__(msg)


class InvalidDeclarationError(ConfigurationError):
    def __init__(self, address: str, problems: Sequence[str]):
        self.address = address
        self.problems = list(problems)
        super().__init__(f"Invalid declaration '{address}': " + "; ".join(self.problems))


class UnresolvedReferenceError(ConfigurationError):
    def __init__(self, source: str, field: str, target: str):
        self.source = source
        self.field = field
        self.target = target
        super().__init__(
            f"'{source}' field '{field}' references undeclared resource '{target}'"
        )


class CyclicDependencyError(ConfigurationError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        path = " -> ".join(self.cycle + self.cycle[:1])
        super().__init__(f"Dependency cycle detected: {path}")


# ------------------------------------------------------------------ provider
class ProviderError(IamGraphError):
    """Raised by provider implementations for remote-side failures."""


class ResourceNotFoundError(ProviderError):
    def __init__(self, kind: str, remote_id: str):
        self.kind = kind
        self.remote_id = remote_id
        super().__init__(f"{kind} '{remote_id}' does not exist")


class ResourceConflictError(ProviderError):
    pass


class ProviderCallError(IamGraphError):
    """A provider call failed for a specific resource and operation."""

    def __init__(self, address: str, operation: str, cause: BaseException):
        self.address = address
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} {address} failed: {cause}")


# ------------------------------------------------------------------ executor
class ImmutableFieldReplaceRequired(IamGraphError):
    """
    Not a failure. Signals that the desired value of an immutable field
    changed, so the resource must be destroyed and created again.
    """

    def __init__(self, address: str, fields: Iterable[str]):
        self.address = address
        self.fields = sorted(fields)
        super().__init__(
            f"{address} must be replaced: immutable field(s) changed: "
            + ", ".join(self.fields)
        )


class InvalidTransitionError(IamGraphError):
    def __init__(self, address: str, current: str, target: str):
        self.address = address
        self.current = current
        self.target = target
        super().__init__(f"{address}: cannot move from '{current}' to '{target}'")


class PartialApplyError(IamGraphError):
    """
    Summary of a run that did not complete. Nodes in ``succeeded`` keep their
    new state; nothing is rolled back.
    """

    def __init__(
        self,
        operation: str,
        succeeded: List[str],
        failed: Dict[str, ProviderCallError],
        not_attempted: List[str],
        cancelled: bool = False,
        result=None,
    ):
        self.operation = operation
        self.succeeded = list(succeeded)
        self.failed = dict(failed)
        self.not_attempted = list(not_attempted)
        self.cancelled = cancelled
        self.result = result
        head = f"{operation} cancelled" if cancelled else f"{operation} incomplete"
        super().__init__(
            f"{head}: {len(self.succeeded)} succeeded, {len(self.failed)} failed, "
            f"{len(self.not_attempted)} not attempted"
        )

    @property
    def first_error(self) -> Optional[ProviderCallError]:
        return next(iter(self.failed.values()), None)


# ------------------------------------------------------------------ state
class StateError(IamGraphError):
    pass
