"""Error hierarchy and error response models."""

from pydantic import BaseModel, Field


class CineSumError(Exception):
    """Base error for all CineSum errors."""

    def __init__(self, message: str, component: str = "", details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.component = component
        self.details = details or {}


class InvalidStateError(CineSumError):
    """Operation requested in a pipeline state that forbids it."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, component="orchestrator", details=details)


class ConfigurationError(CineSumError):
    """Missing or inconsistent configuration (settings, tool wiring)."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, component="configuration", details=details)


class StageFailure(CineSumError):
    """A stage's tool reported failure or did not finish in time."""

    def __init__(self, message: str, stage: str = "", details: dict | None = None):
        super().__init__(message, component=stage or "stage", details=details)
        self.stage = stage


class StageCancelled(StageFailure):
    """Raised inside a stage once the run has been cancelled."""

    def __init__(self, stage: str = "", details: dict | None = None):
        super().__init__("cancelled", stage=stage, details=details)


class StageTimeout(StageFailure):
    """A stage exceeded its configured deadline."""

    def __init__(self, timeout: float, stage: str = ""):
        super().__init__(f"timed out after {timeout:g}s", stage=stage, details={"timeout": timeout})
        self.timeout = timeout


class StageToolError(CineSumError):
    """Errors raised by tool adapters while talking to external programs or services."""

    def __init__(
        self,
        message: str,
        component: str = "tool",
        retriable: bool = False,
        details: dict | None = None,
    ):
        super().__init__(message, component=component, details=details)
        self.retriable = retriable


class ErrorResponse(BaseModel):
    """Standardized error response for API."""

    error_type: str = Field(..., description="Error category")
    component: str = Field(default="", description="Component that raised the error")
    message: str = Field(..., description="Human-readable error message")
    details: dict = Field(default_factory=dict)
    actionable_guidance: str = Field(default="", description="Suggested user action")
    retry_possible: bool = Field(default=False)

    @classmethod
    def from_exception(
        cls, exc: CineSumError, guidance: str = "", retry: bool = False
    ) -> "ErrorResponse":
        return cls(
            error_type=type(exc).__name__,
            component=exc.component,
            message=exc.message,
            details=exc.details,
            actionable_guidance=guidance,
            retry_possible=retry,
        )
