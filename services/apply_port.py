"""Contract between the sync coordinator and the remote resource adapters.

An apply port receives one :class:`~models.operation.Operation` at a time and
reports what happened to it. Delivery is at-least-once: the same operation id
can reach ``apply`` again after a partial failure (for example a timeout after
the server already stored the write), so every implementation must be
idempotent per operation id. The queue does not deduplicate by content.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from models.operation import Operation, OperationKind
from services.error_policy import DEFAULT_POLICY, ErrorPolicy


logger = logging.getLogger("carequeue.sync.port")


@dataclass(frozen=True)
class ApplySuccess:
    result: Any = None


@dataclass(frozen=True)
class RetryableFailure:
    reason: str


@dataclass(frozen=True)
class PermanentFailure:
    reason: str


ApplyOutcome = Union[ApplySuccess, RetryableFailure, PermanentFailure]


class ResourceApplyPort(ABC):
    """Applies queued operations to the remote backend."""

    @abstractmethod
    def apply(self, operation: Operation) -> ApplyOutcome:
        """Apply ``operation`` remotely. Must be safe to call more than once."""


class ResourceAdapter(ABC):
    """Per resource type remote calls used by :class:`RoutingApplyPort`."""

    resource_type: str = ""

    @abstractmethod
    def create(self, payload: Any) -> Any:
        ...

    @abstractmethod
    def update(self, resource_id: str, payload: Any) -> Any:
        ...

    @abstractmethod
    def delete(self, resource_id: str) -> Any:
        ...

    def refresh_cache(self) -> None:
        """Reload read-side caches after the queue has drained."""

    def clear_cache(self) -> None:
        """Drop read-side caches on a hard reset."""


def _resource_id(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        value = payload.get("id")
        return str(value) if value not in (None, "") else None
    return None


class RoutingApplyPort(ResourceApplyPort):
    """Dispatches operations to the adapter registered for their resource type."""

    def __init__(self, policy: ErrorPolicy = DEFAULT_POLICY) -> None:
        self.policy = policy
        self._adapters: Dict[str, ResourceAdapter] = {}

    def register(self, adapter: ResourceAdapter, resource_type: Optional[str] = None) -> None:
        name = (resource_type or adapter.resource_type or "").strip()
        if not name:
            raise ValueError("Adapter needs a resource type")
        self._adapters[name.lower()] = adapter

    def adapter_for(self, resource_type: str) -> Optional[ResourceAdapter]:
        return self._adapters.get((resource_type or "").lower())

    def apply(self, operation: Operation) -> ApplyOutcome:
        adapter = self.adapter_for(operation.resource_type)
        if adapter is None:
            return PermanentFailure(f"No adapter registered for {operation.resource_type}")

        payload = operation.payload
        try:
            if operation.kind is OperationKind.CREATE:
                return ApplySuccess(adapter.create(payload))
            resource_id = _resource_id(payload)
            if resource_id is None:
                return PermanentFailure(f"{operation.kind.value} needs a resource id")
            if operation.kind is OperationKind.UPDATE:
                return ApplySuccess(adapter.update(resource_id, payload))
            return ApplySuccess(adapter.delete(resource_id))
        except Exception as exc:
            reason = f"{exc.__class__.__name__}: {exc}"
            if self.policy.is_retryable(exc):
                return RetryableFailure(reason)
            return PermanentFailure(reason)

    # ----- hooks -----
    def refresh_caches(self) -> None:
        for name, adapter in list(self._adapters.items()):
            try:
                adapter.refresh_cache()
            except Exception:
                logger.exception("Failed to refresh %s cache", name)

    def clear_caches(self) -> None:
        for name, adapter in list(self._adapters.items()):
            try:
                adapter.clear_cache()
            except Exception:
                logger.exception("Failed to clear %s cache", name)


__all__ = [
    "ApplyOutcome",
    "ApplySuccess",
    "PermanentFailure",
    "ResourceAdapter",
    "ResourceApplyPort",
    "RetryableFailure",
    "RoutingApplyPort",
]
