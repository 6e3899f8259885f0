"""Error taxonomy for provisioning and configuration propagation.

Every error carries a short code so CLI output and logs can be grepped:

- E1xx: graph validation (raised before any mutating call)
- E3xx: provisioning and access grants
- E4xx: manifest rendering and apply
- E5xx: external backend calls
"""

from typing import Iterable, Optional


class DriverError(Exception):
    """Base exception for platform-driver errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class CycleError(DriverError):
    """Dependency graph contains a cycle."""

    def __init__(self, participants: Iterable[str]):
        self.participants = list(participants)
        super().__init__(
            "E100",
            f"Dependency cycle between descriptors: {' -> '.join(self.participants)}",
        )


class UnresolvedReferenceError(DriverError):
    """A referenced output was not available when a descriptor was provisioned.

    The graph builder guarantees producers run first, so this indicates a
    builder/engine defect rather than a normal runtime condition.
    """

    def __init__(self, descriptor: str, producer: str, output: str):
        self.descriptor = descriptor
        self.producer = producer
        self.output = output
        super().__init__(
            "E101",
            f"Descriptor '{descriptor}' references '{producer}.{output}' "
            f"which has not been computed",
        )


class ProvisioningFailure(DriverError):
    """An individual resource upsert failed.

    Prior successes are retained; rerunning the engine resumes from here.
    """

    def __init__(self, descriptor: str, reason: str, attempts: int = 1):
        self.descriptor = descriptor
        self.reason = reason
        self.attempts = attempts
        super().__init__(
            "E300",
            f"Provisioning '{descriptor}' failed after {attempts} attempt(s): {reason}",
        )


class GrantConflictError(DriverError):
    """A grant with the same deterministic id exists with a different triple.

    Not fatal: the assigner logs it and skips the grant.
    """

    def __init__(self, grant_id: str, detail: str):
        self.grant_id = grant_id
        self.detail = detail
        super().__init__("E310", f"Grant {grant_id} conflicts: {detail}")


class MissingConfigurationError(DriverError):
    """Manifest placeholders with no matching configuration entry."""

    def __init__(self, keys: Iterable[str], environment: Optional[str] = None):
        self.keys = sorted(set(keys))
        self.environment = environment
        where = f" for environment '{environment}'" if environment else ''
        super().__init__(
            "E400",
            f"Missing configuration{where}: {', '.join(self.keys)}",
        )


class PartialApplyError(DriverError):
    """The workload orchestrator rejected some objects of an applied batch."""

    def __init__(self, failed: list, applied: Optional[list] = None):
        self.failed = failed
        self.applied = applied or []
        names = ', '.join(f"{r.object_name} ({r.message})" for r in failed)
        super().__init__(
            "E410",
            f"{len(failed)} object(s) failed to apply: {names}",
        )


class BackendError(DriverError):
    """An external CLI/API call failed."""

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__("E500", f"{operation} failed: {detail.strip()}")
