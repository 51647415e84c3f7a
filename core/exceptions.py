# WORKFLOW: Error taxonomy for the duty calculation engine.
# Used by: Rate resolution services, policy engine, calculation orchestrator, API routers
# Errors:
# 1. NotFound - No tariff entry or no resolvable formula (fatal, HTTP 404)
# 2. EvaluationError - Malformed or unevaluable formula (fatal for base duty only)
# 3. ExternalLookupFailure - Knowledge base or historical store unreachable (recovered)
# 4. AuditWriteFailure - Calculation record could not be saved (logged only)


class DutyEngineError(Exception):
    """Base class for all engine errors."""


class NotFound(DutyEngineError):
    """Raised when no tariff entry or formula can be resolved."""


class EvaluationError(DutyEngineError):
    """Raised when a rate formula cannot be evaluated."""

    def __init__(self, message: str, formula: str = None):
        super().__init__(message)
        self.formula = formula


class ExternalLookupFailure(DutyEngineError):
    """Raised when an external lookup collaborator is unreachable."""


class AuditWriteFailure(DutyEngineError):
    """Raised when a calculation record cannot be persisted."""
