"""
Per-resource lifecycle tracking for a single executor run.

    absent -> pending -> created -> (updated)* -> destroying -> absent

Any in-flight state may move to ``failed``; from there only a retry of the
operation that failed is allowed.
"""
import threading
from typing import Dict, List, Optional

from iamgraph.errors import InvalidTransitionError
from iamgraph.models.state import ResourceStatus

S = ResourceStatus

_ALLOWED = {
    S.ABSENT:     {S.PENDING},
    S.PENDING:    {S.CREATED, S.UPDATED, S.FAILED},
    S.CREATED:    {S.PENDING, S.DESTROYING},
    S.UPDATED:    {S.PENDING, S.DESTROYING},
    S.DESTROYING: {S.ABSENT, S.FAILED},
    S.FAILED:     set(),
}

OPERATION_APPLY = "apply"
OPERATION_DESTROY = "destroy"


class Lifecycle:
    def __init__(self):
        self._status: Dict[str, ResourceStatus] = {}
        self._failed_operation: Dict[str, str] = {}
        self._history: Dict[str, List[ResourceStatus]] = {}
        self._lock = threading.Lock()

    def seed(self, address: str, status: ResourceStatus) -> None:
        with self._lock:
            self._status[address] = status
            self._history[address] = [status]

    def status(self, address: str) -> ResourceStatus:
        with self._lock:
            return self._status.get(address, S.ABSENT)

    def history(self, address: str) -> List[ResourceStatus]:
        with self._lock:
            return list(self._history.get(address, []))

    def transition(self, address: str, target: ResourceStatus) -> None:
        with self._lock:
            current = self._status.get(address, S.ABSENT)
            if target not in _ALLOWED[current]:
                raise InvalidTransitionError(address, current.value, target.value)
            self._status[address] = target
            self._history.setdefault(address, [current]).append(target)

    def fail(self, address: str, operation: str) -> None:
        self.transition(address, S.FAILED)
        with self._lock:
            self._failed_operation[address] = operation

    def failed_operation(self, address: str) -> Optional[str]:
        with self._lock:
            return self._failed_operation.get(address)

    def retry(self, address: str, operation: str, prior: ResourceStatus) -> None:
        """Leave ``failed`` to run ``operation`` again from ``prior``."""
        with self._lock:
            current = self._status.get(address, S.ABSENT)
            if current is not S.FAILED:
                raise InvalidTransitionError(address, current.value, "retry")
            if self._failed_operation.get(address) != operation:
                raise InvalidTransitionError(
                    address, current.value, f"{operation} (failed during {self._failed_operation.get(address)})"
                )
            del self._failed_operation[address]
            self._status[address] = prior
            self._history[address].append(prior)
