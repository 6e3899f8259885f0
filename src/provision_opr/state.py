"""Run state for stack-based provisioning.

Tracks per-descriptor status (pending, running, completed, failed, skipped,
destroyed) for reporting, and holds the write-once output map that feeds
reference resolution. Nothing here is persisted between runs: a rerun
rediscovers state by reading the target environment.
"""

import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from descriptor import Reference
from errors import ProvisioningFailure, UnresolvedReferenceError


@dataclass
class NodeState:
    """Per-descriptor execution state.

    Attributes:
        name: Descriptor name
        status: pending, running, completed, failed, skipped, destroyed
        action: What the upsert did: created, updated, unchanged (or deleted, absent on destroy)
        resource_id: Provider resource identifier once known
        drift: Attribute names that differed from observed state
        attempts: Provider attempts used by the last operation
        started_at: Timestamp when execution started
        completed_at: Timestamp when execution completed
        error: Error message if failed or skipped
    """
    name: str
    status: str = 'pending'
    action: Optional[str] = None
    resource_id: Optional[str] = None
    drift: list[str] = field(default_factory=list)
    attempts: int = 0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def start(self) -> None:
        self.status = 'running'
        self.started_at = time.time()

    def complete(self, action: str, resource_id: Optional[str] = None,
                 drift: Optional[list[str]] = None) -> None:
        self.status = 'completed'
        self.action = action
        self.completed_at = time.time()
        if resource_id is not None:
            self.resource_id = resource_id
        if drift:
            self.drift = list(drift)

    def fail(self, error: str) -> None:
        self.status = 'failed'
        self.completed_at = time.time()
        self.error = error

    def skip(self, reason: str) -> None:
        self.status = 'skipped'
        self.error = reason

    def mark_destroyed(self, action: str = 'deleted') -> None:
        self.status = 'destroyed'
        self.action = action
        self.completed_at = time.time()

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'status': self.status,
        }
        if self.action is not None:
            d['action'] = self.action
        if self.resource_id is not None:
            d['resource_id'] = self.resource_id
        if self.drift:
            d['drift'] = list(self.drift)
        if self.attempts:
            d['attempts'] = self.attempts
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.error is not None:
            d['error'] = self.error
        return d


class OutputMap:
    """Write-once-per-descriptor output store.

    Each descriptor writes its outputs exactly once per run; writes take a
    lock, reads of finalized outputs do not.
    """

    def __init__(self):
        self._outputs: dict[str, Mapping[str, Any]] = {}
        self._lock = threading.Lock()

    def set(self, name: str, outputs: Mapping[str, Any]) -> None:
        """Record a descriptor's outputs.

        Raises:
            ValueError: If outputs for name were already recorded in this run
        """
        with self._lock:
            if name in self._outputs:
                raise ValueError(f"Outputs for '{name}' already set in this run")
            self._outputs[name] = MappingProxyType(dict(outputs))

    def get(self, name: str) -> Optional[Mapping[str, Any]]:
        return self._outputs.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._outputs

    def lookup(self, consumer: str, ref: Reference) -> Any:
        """Resolve a reference made by consumer.

        Raises:
            UnresolvedReferenceError: If the producer or its output is missing
        """
        outputs = self._outputs.get(ref.producer)
        if outputs is None or ref.output not in outputs:
            raise UnresolvedReferenceError(consumer, ref.producer, ref.output)
        return outputs[ref.output]

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {name: dict(outputs) for name, outputs in self._outputs.items()}


class ProvisionState:
    """Stack-level run state.

    Attributes:
        failure: The ProvisioningFailure that stopped the run, if any
        grants: Grant results recorded by the access policy assigner
    """

    def __init__(self, stack_name: str, env_name: str):
        self.stack_name = stack_name
        self.env_name = env_name
        self._nodes: dict[str, NodeState] = {}
        self.outputs = OutputMap()
        # Sensitive outputs, kept out of the output map and to_dict()
        self.secrets: dict[str, dict[str, Any]] = {}
        self.grants: list = []
        self._grants_lock = threading.Lock()
        self.failure: Optional[ProvisioningFailure] = None
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None

    def add_node(self, name: str) -> NodeState:
        state = NodeState(name=name)
        self._nodes[name] = state
        return state

    def record_grants(self, results: list) -> None:
        with self._grants_lock:
            self.grants.extend(results)

    def get_node(self, name: str) -> NodeState:
        """Get node state by name.

        Raises:
            KeyError: If node not registered
        """
        return self._nodes[name]

    @property
    def nodes(self) -> dict[str, NodeState]:
        return dict(self._nodes)

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    def count(self, status: str) -> int:
        return sum(1 for n in self._nodes.values() if n.status == status)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'stack': self.stack_name,
            'environment': self.env_name,
            'nodes': [n.to_dict() for n in self._nodes.values()],
            'grants': [g.to_dict() for g in self.grants],
        }
        if self.failure is not None:
            d['failure'] = {
                'descriptor': self.failure.descriptor,
                'error': self.failure.message,
            }
        return d
