"""
Exception hierarchy shared by the allocator, reconciler and lifecycle engine.
"""
from typing import List, Optional


class FleetError(Exception):
    """Base class for every error raised by nodefleet."""


class ConfigurationError(FleetError):
    """
    Unknown service type, malformed flow definition or missing dependency.
    Always raised before any side effect.
    """


class ServiceNotFound(FleetError):
    """The named instance is not installed under the fleet root."""

    def __init__(self, name: str):
        super().__init__(f"Service '{name}' is not installed")
        self.name = name


class AllocationExhausted(FleetError):
    """No free port or port block left in a category range."""

    def __init__(self, spec_name: str, category: str, wanted: int, found: int):
        super().__init__(
            f"Could not allocate {wanted} port(s) for {spec_name} in category "
            f"'{category}' (found {found})"
        )
        self.spec_name = spec_name
        self.category = category
        self.wanted = wanted
        self.found = found


class StepFailure(FleetError):
    """A lifecycle step failed. Carries the step name and the reason."""

    def __init__(self, step: str, reason: str):
        super().__init__(f"Step '{step}' failed: {reason}")
        self.step = step
        self.reason = reason


class CriticalStepFailure(StepFailure):
    """Failure of a step owning the instance's resources; aborts the flow."""


class NonCriticalStepFailure(StepFailure):
    """Failure of a cross-service step; recorded, the flow continues."""


class OperationInProgress(FleetError):
    """Another lifecycle action holds the session lock."""


class RuntimeCommandError(FleetError):
    """A container runtime invocation exited with an error."""

    def __init__(self, command: List[str], returncode: int, stderr: Optional[str] = None):
        detail = (stderr or "").strip()
        message = f"'{' '.join(command)}' exited with {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
