"""Access policy assignment for stack-based provisioning.

Each descriptor's ``access`` block lists (principal, role) pairs scoped to
that descriptor. Grants carry an identifier derived only from
(scope, principal, role), so reruns find the grant they issued before and
never create a second one.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import Optional

from common import retry_with_backoff
from descriptor import ResourceDescriptor
from errors import GrantConflictError
from provision_opr.state import OutputMap
from providers.base import GrantStore

logger = logging.getLogger(__name__)

# Fixed namespace for grant identifiers; changing it re-keys every grant
GRANT_NAMESPACE = uuid.UUID('6f1c3e8a-5b2d-4c47-9a0e-2d8f4b7e9c31')

# Outputs tried, in order, to find a principal's identity
PRINCIPAL_OUTPUTS = ('principalId', 'objectId')

# Outputs tried, in order, to find a scope's resource identifier
SCOPE_OUTPUTS = ('id', 'resourceId')


def grant_id(scope: str, principal: str, role: str) -> str:
    """Deterministic grant identifier for a (scope, principal, role) triple."""
    return str(uuid.uuid5(GRANT_NAMESPACE, f'{scope}|{principal}|{role}'))


@dataclass(frozen=True)
class AccessGrant:
    """A role binding of a principal on a scope resource.

    Attributes:
        scope: Descriptor name of the scope resource
        principal: Descriptor name of the principal
        role: Role name
        scope_id: Provider identifier of the scope resource
        principal_id: Provider identity of the principal
    """
    scope: str
    principal: str
    role: str
    scope_id: str
    principal_id: str

    @property
    def grant_id(self) -> str:
        return grant_id(self.scope_id, self.principal_id, self.role)

    def matches(self, existing: dict) -> bool:
        """True if an existing grant binds the same principal, role and scope."""
        return (
            existing.get('principal') == self.principal_id
            and str(existing.get('role', '')).casefold() == self.role.casefold()
            and str(existing.get('scope', '')).casefold() == self.scope_id.casefold()
        )


@dataclass
class GrantResult:
    """Outcome of assigning one grant: created, exists or conflict."""
    grant: AccessGrant
    action: str
    message: str = ''

    def to_dict(self) -> dict:
        d = {
            'grant_id': self.grant.grant_id,
            'scope': self.grant.scope,
            'principal': self.grant.principal,
            'role': self.grant.role,
            'action': self.action,
        }
        if self.message:
            d['message'] = self.message
        return d


def _first_output(outputs, names: tuple[str, ...]) -> Optional[str]:
    for name in names:
        value = outputs.get(name)
        if value:
            return str(value)
    return None


class AccessPolicyAssigner:
    """Issues declared grants exactly once.

    Issuance against a scope is serialized per (scope, principal) pair; grants
    for different pairs proceed concurrently. Grants are never revoked.
    """

    def __init__(self, store: GrantStore, attempts: int = 3, base_delay: float = 2.0,
                 cancel: Optional[threading.Event] = None):
        self.store = store
        self.attempts = attempts
        self.base_delay = base_delay
        self.cancel = cancel
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, scope_id: str, principal_id: str) -> threading.Lock:
        key = (scope_id, principal_id)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def grants_for(self, descriptor: ResourceDescriptor, outputs: OutputMap) -> list[AccessGrant]:
        """Build the grants a descriptor declares, from recorded outputs.

        Raises:
            ValueError: If the scope or a principal has no usable identity output
        """
        if not descriptor.access:
            return []

        scope_outputs = outputs.get(descriptor.name) or {}
        scope_id = _first_output(scope_outputs, SCOPE_OUTPUTS)
        if not scope_id:
            raise ValueError(f"Scope '{descriptor.name}' has no resource id output")

        grants = []
        for spec in descriptor.access:
            principal_outputs = outputs.get(spec.principal) or {}
            principal_id = _first_output(principal_outputs, PRINCIPAL_OUTPUTS)
            if not principal_id:
                raise ValueError(
                    f"Principal '{spec.principal}' has no "
                    f"{' or '.join(PRINCIPAL_OUTPUTS)} output"
                )
            grants.append(AccessGrant(
                scope=descriptor.name,
                principal=spec.principal,
                role=spec.role,
                scope_id=scope_id,
                principal_id=principal_id,
            ))
        return grants

    def assign(self, grant: AccessGrant) -> GrantResult:
        """Issue a grant if absent.

        A grant present with the same triple is a no-op. A divergent grant
        under the same id, or a store-reported duplicate, is logged and
        skipped.

        Raises:
            BackendError: If the grant store keeps failing after retries
        """
        gid = grant.grant_id
        with self._lock_for(grant.scope_id, grant.principal_id):
            existing = retry_with_backoff(
                lambda: self.store.get_grant(gid, grant.scope_id),
                f"Read grant {gid}",
                attempts=self.attempts,
                base_delay=self.base_delay,
                cancel=self.cancel,
            )
            if existing is not None:
                if grant.matches(existing):
                    logger.debug(f"Grant {gid} already present "
                                 f"({grant.principal} -> {grant.role} on {grant.scope})")
                    return GrantResult(grant, 'exists')
                conflict = GrantConflictError(
                    gid,
                    f"existing grant binds principal={existing.get('principal')} "
                    f"role={existing.get('role')}",
                )
                logger.warning(f"{conflict}; skipping")
                return GrantResult(grant, 'conflict', conflict.message)

            try:
                retry_with_backoff(
                    lambda: self.store.create_grant(
                        gid, grant.principal_id, grant.role, grant.scope_id),
                    f"Create grant {gid}",
                    attempts=self.attempts,
                    base_delay=self.base_delay,
                    cancel=self.cancel,
                )
            except GrantConflictError as e:
                logger.warning(f"{e}; skipping")
                return GrantResult(grant, 'conflict', e.message)

        logger.info(f"Granted '{grant.role}' to '{grant.principal}' on '{grant.scope}' ({gid})")
        return GrantResult(grant, 'created')

    def assign_all(self, descriptor: ResourceDescriptor, outputs: OutputMap) -> list[GrantResult]:
        """Assign every grant scoped to descriptor."""
        return [self.assign(g) for g in self.grants_for(descriptor, outputs)]
