# agent/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from relayforge.protocol import StepResult
from relayforge.state import JobStatus, StepStatus


@dataclass
class StepOutcome:
    """What happened when one step ran on this runner."""
    step_id: str
    status: StepStatus
    exit_code: Optional[int] = None
    output: str = ""
    error: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_result(self, lease_id: str) -> StepResult:
        """Convert to the step-result message reported to the control plane."""
        return StepResult(
            step_id=self.step_id,
            lease_id=lease_id,
            status=self.status,
            exit_code=self.exit_code,
            output=self.output,
            error=self.error,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


@dataclass
class JobOutcome:
    """Result of executing one assignment."""
    status: JobStatus  # success | failed
    error: Optional[str] = None
    cancelled: bool = False
    steps: List[StepOutcome] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "error": self.error,
            "cancelled": self.cancelled,
            "steps": {s.step_id: s.status.value for s in self.steps},
        }
