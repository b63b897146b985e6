"""Error taxonomy shared by the orchestrator, monitors and dispatcher."""


class StackWardenError(Exception):
    """Base class for all domain errors."""


class ProvisioningError(StackWardenError):
    """A deployment step failed. The orchestrator rolls back and reports it."""

    def __init__(self, step: str, reason: str) -> None:
        super().__init__(f"{step}: {reason}")
        self.step = step
        self.reason = reason


class DeploymentCancelled(ProvisioningError):
    def __init__(self, step: str) -> None:
        super().__init__(step, "Deployment cancelled")


class TransientQueryError(StackWardenError):
    """Metrics backend or health probe unreachable / timed out."""


class NotificationDeliveryError(StackWardenError):
    """A notification channel could not hand the alert to its provider."""


class InvalidStatusTransition(StackWardenError):
    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"{entity} cannot move from '{current}' to '{target}'")
        self.entity = entity
        self.current = current
        self.target = target
