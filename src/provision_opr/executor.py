"""Provisioning engine for stack-based orchestration.

Walks the dependency graph and performs an idempotent upsert per descriptor:
read the resource fresh, create it when absent, update only drifted
attributes when present, and do nothing when it already matches. Outputs go
into the write-once output map, then grants scoped to the descriptor are
assigned before its consumers may start.

Independent descriptors run concurrently up to max_parallel (1 means strictly
sequential). The first failed upsert stops scheduling; descriptors already
applied stay applied and a rerun picks up from there.
"""

import heapq
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Optional

from common import CancelledError, retry_with_backoff
from config import EnvConfig
from descriptor import Reference, ResourceDescriptor, Stack, resolve_value
from errors import BackendError, ProvisioningFailure
from provision_opr.grants import AccessPolicyAssigner
from provision_opr.graph import DependencyGraph, GraphNode
from provision_opr.state import ProvisionState
from providers.base import ObservedResource, ResourceProvider

logger = logging.getLogger(__name__)

# Placeholder for inputs whose producer does not exist yet (plan only)
UNKNOWN = '(known after apply)'


def _matches(desired: Any, actual: Any) -> bool:
    """Desired mappings match when every desired key matches; extra observed keys are ignored."""
    if isinstance(desired, dict):
        return isinstance(actual, dict) and all(
            _matches(v, actual.get(k)) for k, v in desired.items())
    if isinstance(desired, (list, tuple)):
        return (isinstance(actual, (list, tuple)) and len(desired) == len(actual)
                and all(_matches(d, a) for d, a in zip(desired, actual)))
    if desired is None or actual is None:
        return desired is actual
    if isinstance(desired, bool) or isinstance(actual, bool):
        return desired == actual
    return desired == actual or str(desired) == str(actual)


def diff_attributes(desired: dict, observed: dict) -> dict:
    """Return the desired attributes whose values differ from observed."""
    return {k: v for k, v in desired.items() if not _matches(v, observed.get(k))}


def _contains_unknown(value: Any) -> bool:
    if isinstance(value, str):
        return UNKNOWN in value
    if isinstance(value, dict):
        return any(_contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_contains_unknown(v) for v in value)
    return False


@dataclass
class PlannedChange:
    """Previewed outcome for one descriptor."""
    name: str
    kind: str
    action: str  # create, update, unchanged
    changes: list[str] = field(default_factory=list)
    unknown: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'name': self.name, 'kind': self.kind, 'action': self.action}
        if self.changes:
            d['changes'] = self.changes
        if self.unknown:
            d['unknown'] = self.unknown
        return d


@dataclass
class ProvisioningEngine:
    """Applies, previews and tears down a stack.

    Attributes:
        stack: The stack being provisioned
        graph: Dependency graph built from the stack
        config: Target environment
        provider: Resource provider backend
        assigner: Access policy assigner; grants are skipped when None
        publisher: Configuration publisher, used by destroy to unpublish
        dry_run: If True, preview operations without calling the provider
        cancel: Set to stop scheduling and abort backoff waits
    """
    stack: Stack
    graph: DependencyGraph
    config: EnvConfig
    provider: ResourceProvider
    assigner: Optional[AccessPolicyAssigner] = None
    publisher: Optional[Any] = None
    dry_run: bool = False
    cancel: threading.Event = field(default_factory=threading.Event)

    @property
    def max_parallel(self) -> int:
        value = self.stack.settings.max_parallel or self.config.max_parallel
        return max(1, int(value))

    @property
    def retry_attempts(self) -> int:
        value = self.stack.settings.retry_attempts or self.config.retry_attempts
        return max(1, int(value))

    @property
    def retry_base_delay(self) -> float:
        value = self.stack.settings.retry_base_delay
        if value is None:
            value = self.config.retry_base_delay
        return float(value)

    def _new_state(self, order: list[GraphNode]) -> ProvisionState:
        state = ProvisionState(self.stack.name, self.config.name)
        for node in order:
            state.add_node(node.name)
        return state

    def apply(self) -> tuple[bool, ProvisionState]:
        """Provision every descriptor in dependency order.

        Returns:
            (success, state); on failure state.failure names the descriptor

        Raises:
            UnresolvedReferenceError: If a producer's output is missing
        """
        state = self._new_state(self.graph.create_order())
        state.start()

        if self.dry_run:
            self._preview_apply()
            state.finish()
            return True, state

        logger.info(f"[apply] Stack '{self.stack.name}' on '{self.config.name}' "
                    f"({len(self.stack.descriptors)} descriptors, "
                    f"max_parallel={self.max_parallel})")
        success = self._schedule(state)
        state.finish()

        logger.info(f"[apply] Finished: {state.count('completed')} completed, "
                    f"{state.count('failed')} failed, {state.count('skipped')} skipped")
        return success, state

    def _schedule(self, state: ProvisionState) -> bool:
        """Run descriptors as their producers complete, bounded by max_parallel."""
        order = self.graph.create_order()
        waiting = {node.name: len(node.producers) for node in order}
        ready = [(node.index, node.name) for node in order if waiting[node.name] == 0]
        heapq.heapify(ready)
        in_flight: dict[Future, GraphNode] = {}
        stopped = False

        with ThreadPoolExecutor(max_workers=self.max_parallel,
                                thread_name_prefix='provision') as pool:
            while ready or in_flight:
                while (ready and not stopped and not self.cancel.is_set()
                       and len(in_flight) < self.max_parallel):
                    _, name = heapq.heappop(ready)
                    node = self.graph.get_node(name)
                    state.get_node(name).start()
                    in_flight[pool.submit(self._provision_node, node, state)] = node

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda f: in_flight[f].index):
                    node = in_flight.pop(future)
                    node_state = state.get_node(node.name)
                    try:
                        future.result()
                    except ProvisioningFailure as e:
                        node_state.attempts = e.attempts
                        node_state.fail(e.reason)
                        logger.error(f"[apply] {e}")
                        if state.failure is None:
                            state.failure = e
                        stopped = True
                        continue
                    except CancelledError:
                        node_state.fail('cancelled')
                        stopped = True
                        continue

                    for consumer in node.consumers:
                        waiting[consumer.name] -= 1
                        if waiting[consumer.name] == 0:
                            heapq.heappush(ready, (consumer.index, consumer.name))

        if self.cancel.is_set():
            logger.warning("[apply] Cancelled; no further descriptors started")
        for name, node_state in state.nodes.items():
            if node_state.status == 'pending':
                if state.failure is not None:
                    node_state.skip(f"not started: '{state.failure.descriptor}' failed")
                else:
                    node_state.skip('cancelled')

        return state.failure is None and not self.cancel.is_set()

    def _provision_node(self, node: GraphNode, state: ProvisionState) -> None:
        """Upsert one descriptor, record its outputs, then assign its grants.

        Raises:
            ProvisioningFailure: If the upsert or a grant fails after retries
            UnresolvedReferenceError: If an input cannot be resolved
            CancelledError: If cancelled during a backoff wait
        """
        d = node.descriptor
        node_state = state.get_node(d.name)
        scope = self.config.scope
        desired = resolve_value(d.attributes, lambda ref: state.outputs.lookup(d.name, ref))

        attempts = 0

        def upsert() -> tuple[str, ObservedResource, list[str]]:
            nonlocal attempts
            attempts += 1
            observed = self.provider.read(d, scope)
            if observed is None:
                logger.info(f"[apply] Creating {d.kind} '{d.name}'")
                return 'created', self.provider.create(d, desired, scope), []
            changes = diff_attributes(desired, observed.attributes)
            if not changes:
                return 'unchanged', observed, []
            drift = sorted(changes)
            logger.info(f"[apply] Updating {d.kind} '{d.name}': {', '.join(drift)}")
            return 'updated', self.provider.update(d, observed, changes, scope), drift

        try:
            action, observed, drift = retry_with_backoff(
                upsert,
                f"Upsert {d.kind} '{d.name}'",
                attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
                cancel=self.cancel,
            )
        except BackendError as e:
            raise ProvisioningFailure(d.name, e.message, attempts)
        node_state.attempts = attempts

        self._record_outputs(d, observed, state, attempts)

        if self.assigner is not None and d.access:
            try:
                state.record_grants(self.assigner.assign_all(d, state.outputs))
            except (BackendError, ValueError) as e:
                raise ProvisioningFailure(d.name, f"access grant failed: {e}", attempts)

        node_state.complete(action, observed.resource_id, drift)
        logger.info(f"[apply] {d.kind} '{d.name}': {action}")

    def _record_outputs(self, d: ResourceDescriptor, observed: ObservedResource,
                        state: ProvisionState, attempts: int) -> None:
        missing = [s.output for s in d.secrets if s.output not in observed.secret_outputs]
        if missing:
            raise ProvisioningFailure(
                d.name, f"provider returned no secret output(s): {', '.join(missing)}", attempts)
        outputs = {k: v for k, v in observed.outputs.items() if k not in d.secret_outputs}
        state.outputs.set(d.name, outputs)
        if d.secrets:
            state.secrets[d.name] = {s.output: observed.secret_outputs[s.output]
                                     for s in d.secrets}

    def observe(self) -> ProvisionState:
        """Record outputs of every existing descriptor without changing anything.

        Used to publish configuration for a stack provisioned by an earlier run.
        Descriptors that do not exist are marked skipped.
        """
        order = self.graph.create_order()
        state = self._new_state(order)
        state.start()
        for node in order:
            d = node.descriptor
            node_state = state.get_node(d.name)
            node_state.start()
            observed = self.provider.read(d, self.config.scope)
            if observed is None:
                node_state.skip('absent')
                continue
            self._record_outputs(d, observed, state, 1)
            node_state.complete('unchanged', observed.resource_id)
        state.finish()
        return state

    def plan(self) -> list[PlannedChange]:
        """Preview create/update/unchanged per descriptor without mutating anything.

        Inputs whose producer does not exist yet are reported as unknown.
        """
        scope = self.config.scope
        known: dict[str, dict] = {}
        changes: list[PlannedChange] = []

        def lookup(ref: Reference) -> Any:
            return known.get(ref.producer, {}).get(ref.output, UNKNOWN)

        for node in self.graph.create_order():
            d = node.descriptor
            desired = resolve_value(d.attributes, lookup)
            unknown = sorted(k for k, v in desired.items() if _contains_unknown(v))
            observed = self.provider.read(d, scope)
            if observed is None:
                changes.append(PlannedChange(d.name, d.kind, 'create',
                                             changes=sorted(desired), unknown=unknown))
                continue
            known[d.name] = dict(observed.outputs)
            comparable = {k: v for k, v in desired.items() if k not in unknown}
            drift = sorted(diff_attributes(comparable, observed.attributes))
            action = 'update' if drift or unknown else 'unchanged'
            changes.append(PlannedChange(d.name, d.kind, action, changes=drift, unknown=unknown))
        return changes

    def destroy(self) -> tuple[bool, ProvisionState]:
        """Tear down in reverse dependency order.

        Each descriptor's configuration entries are unpublished before the
        resource is deleted. Failures are recorded and teardown continues.
        """
        order = self.graph.destroy_order()
        state = self._new_state(order)
        state.start()

        if self.dry_run:
            self._preview_destroy()
            state.finish()
            return True, state

        scope = self.config.scope
        success = True
        for node in order:
            d = node.descriptor
            node_state = state.get_node(d.name)
            if self.cancel.is_set():
                node_state.skip('cancelled')
                success = False
                continue

            node_state.start()
            try:
                if self.publisher is not None:
                    self.publisher.unpublish(d)
                observed = retry_with_backoff(
                    lambda: self.provider.read(d, scope),
                    f"Read {d.kind} '{d.name}'",
                    attempts=self.retry_attempts,
                    base_delay=self.retry_base_delay,
                    cancel=self.cancel,
                )
                if observed is None:
                    logger.info(f"[destroy] {d.kind} '{d.name}' already absent")
                    node_state.mark_destroyed('absent')
                    continue
                logger.info(f"[destroy] Deleting {d.kind} '{d.name}'")
                retry_with_backoff(
                    lambda: self.provider.delete(d, observed, scope),
                    f"Delete {d.kind} '{d.name}'",
                    attempts=self.retry_attempts,
                    base_delay=self.retry_base_delay,
                    cancel=self.cancel,
                )
                node_state.mark_destroyed()
            except (BackendError, CancelledError) as e:
                node_state.fail(str(e))
                success = False
                logger.error(f"[destroy] Failed for '{d.name}': {e}")

        if success and self.publisher is not None:
            self.publisher.unpublish_static()

        state.finish()
        return success, state

    def _preview_apply(self) -> None:
        """Preview apply operations."""
        print("")
        print("=" * 65)
        print(f"  DRY-RUN APPLY: {self.stack.name}")
        print(f"  Env: {self.config.name} (scope: {self.config.scope})")
        print(f"  Max parallel: {self.max_parallel}")
        print("=" * 65)
        print("")
        for level, nodes in enumerate(self.graph.levels()):
            for node in nodes:
                d = node.descriptor
                after = ', '.join(p.name for p in node.producers)
                deps = f" (after: {after})" if after else " (root)"
                print(f"  [{level}] {d.name}: {d.kind}{deps}")
                if d.publish:
                    print(f"      publishes: {', '.join(d.publish.values())}")
                for grant in d.access:
                    print(f"      grants: {grant.principal} -> {grant.role}")
        print("")

    def _preview_destroy(self) -> None:
        """Preview destroy operations."""
        print("")
        print("=" * 65)
        print(f"  DRY-RUN DESTROY: {self.stack.name}")
        print(f"  Env: {self.config.name} (scope: {self.config.scope})")
        print("=" * 65)
        print("")
        for node in self.graph.destroy_order():
            print(f"  {node.name}: destroy {node.kind}")
        print("")
