from abc import ABC, abstractmethod
from typing import Any, Dict, Tuple

Attributes = Dict[str, Any]


class Provider(ABC):
    """
    The only boundary to the remote identity service.

    Calls may be retried by the caller but are not assumed to be idempotent:
    the executor consults its state store before calling ``create``.
    """

    name = "provider"

    @abstractmethod
    def create(self, kind: str, attributes: Attributes) -> Tuple[str, Attributes]:
        """Create a resource and return its remote id and result attributes."""

    @abstractmethod
    def read(self, kind: str, remote_id: str) -> Attributes:
        """Return current attributes or raise ResourceNotFoundError."""

    @abstractmethod
    def update(self, kind: str, remote_id: str, attributes: Attributes) -> Attributes:
        """Apply changed attributes in place and return the result attributes."""

    @abstractmethod
    def delete(self, kind: str, remote_id: str) -> None:
        """Remove the resource."""
