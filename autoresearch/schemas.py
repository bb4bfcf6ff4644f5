from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


JobStatus = Literal["queued", "planning", "executing", "verifying", "completed", "failed", "cancelled"]
StepStatus = Literal["pending", "active", "completed"]
LogLevel = Literal["info", "warning", "error"]

TERMINAL_STATUSES = {"completed", "failed", "cancelled"}
TOOL_ALIASES = {"deep_analyze": "analyze_content"}
KNOWN_TOOLS = {"web_search", "scrape_url", "analyze_content"}


class Step(BaseModel):
    step_id: str
    description: str = ""
    tool: str
    params: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    status: StepStatus = "pending"
    result: Optional[str] = None
    uncertainty_level: str = "low"

    model_config = {"extra": "ignore"}

    @field_validator("step_id", mode="before")
    @classmethod
    def _coerce_step_id(cls, value: Any) -> str:
        if value is None or str(value).strip() == "":
            raise ValueError("step_id is required")
        return str(value).strip()

    @field_validator("tool", mode="before")
    @classmethod
    def _normalize_tool(cls, value: Any) -> str:
        name = str(value or "").strip().lower()
        if not name:
            raise ValueError("tool is required")
        return TOOL_ALIASES.get(name, name)

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            value = [value]
        return [str(v) for v in value if v is not None]

    @field_validator("params", mode="before")
    @classmethod
    def _coerce_params(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}


class Plan(BaseModel):
    reasoning: str = ""
    steps: List[Step] = Field(default_factory=list)

    @field_validator("steps")
    @classmethod
    def _unique_step_ids(cls, steps: List[Step]) -> List[Step]:
        seen = set()
        for step in steps:
            if step.step_id in seen:
                raise ValueError(f"duplicate step_id: {step.step_id}")
            seen.add(step.step_id)
        return steps

    def dependency_graph(self) -> Dict[str, List[str]]:
        return {step.step_id: list(step.dependencies) for step in self.steps}


class LogEntry(BaseModel):
    timestamp: str
    message: str
    level: LogLevel = "info"


class Verification(BaseModel):
    status: str
    quality_score: Optional[float] = None
    feedback: Optional[str] = None
    final_report: Optional[str] = None

    model_config = {"extra": "ignore"}

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> str:
        return str(value or "").strip().lower()

    @field_validator("quality_score", mode="before")
    @classmethod
    def _coerce_score(cls, value: Any) -> Optional[float]:
        if value in (None, ""):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @property
    def passed(self) -> bool:
        return self.status == "pass"


class Job(BaseModel):
    job_id: str
    topic: str
    status: JobStatus = "queued"
    plan: Optional[Plan] = None
    logs: List[LogEntry] = Field(default_factory=list)
    final_report: Optional[str] = None
    created_at: str
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def summary(self) -> Dict[str, Any]:
        return {"job_id": self.job_id, "topic": self.topic, "status": self.status, "created_at": self.created_at}


class CreateJobRequest(BaseModel):
    topic: Optional[str] = None
