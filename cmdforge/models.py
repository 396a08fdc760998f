"""
Value objects that flow through one CMDFORGE pipeline run.

GeneratedCode and ExecutionOutcome live for a single run.
ConversationEntry outlives the run inside the HistoryRing.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

DESCRIPTION = "Generated code"

SUCCESS_MESSAGE = "Operation completed successfully"
UNAVAILABLE_MESSAGE = (
    "Error: Python is not installed or could not be found. "
    "Please install Python 3 from python.org"
)

OutcomeStatus = Literal["success", "failed", "timeout", "cancelled", "unavailable", "error"]


class GeneratedCode(BaseModel):
    """Canonical code artifact, whichever provider produced it."""
    model_config = ConfigDict(frozen=True)

    code: str
    description: str = DESCRIPTION


class ConversationEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_request: str
    generated_code: str
    execution_result: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ExecutionOutcome(BaseModel):
    """Result of one Execution Engine invocation."""
    model_config = ConfigDict(frozen=True)

    status: OutcomeStatus
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    duration_seconds: float = 0.0
    message: str = ""  # pre-rendered text for timeout/cancel/error/unavailable

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def display(self) -> str:
        """Render the outcome as the user-visible result string."""
        if self.status == "success":
            return self.stdout or SUCCESS_MESSAGE
        if self.status == "failed":
            return self.stderr or f"Process failed with exit code {self.exit_code}"
        return self.message


class SafetyVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    acceptable: bool
    reason: str
    matched: str | None = None


class PipelineState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING = "executing"


class GenerationResult(BaseModel):
    """What the Controller hands back after a generate call."""
    request: str
    provider: str
    model: str
    code: GeneratedCode | None = None
    verdict: SafetyVerdict | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.code is not None and self.error is None
