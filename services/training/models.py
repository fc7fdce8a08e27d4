from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

import uuid6
from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

from core.time_utils import to_iso, utc_now

TaskStatus = Literal["pending", "running", "succeeded", "failed", "cancelled"]
JobStatus = Literal["running", "succeeded", "failed", "cancelled"]
LogLevel = Literal["info", "warn", "error"]


class TrainingJobInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    profile: str = Field(min_length=1)
    subclasses: List[str] = Field(min_length=1)
    dataset_path: str = Field(min_length=1)
    command_template: Optional[str] = None
    timeout_ms: Optional[PositiveInt] = None
    dry_run: bool = False

    @field_validator("subclasses")
    @classmethod
    def _no_blank_subclasses(cls, value: List[str]) -> List[str]:
        if any(not str(item).strip() for item in value):
            raise ValueError("subclasses must not contain blank names")
        return value


@dataclass
class TrainingLogEntry:
    timestamp: datetime
    level: LogLevel
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": to_iso(self.timestamp), "level": self.level, "message": self.message}


@dataclass
class TrainingTask:
    subclass: str
    command: str
    dry_run: bool
    status: TaskStatus = "pending"
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    logs: List[TrainingLogEntry] = field(default_factory=list)

    def log(self, level: LogLevel, message: str) -> None:
        self.logs.append(TrainingLogEntry(timestamp=utc_now(), level=level, message=message))

    def finish(self, status: TaskStatus, level: LogLevel, message: str) -> None:
        self.status = status
        self.completed_at = utc_now()
        self.log(level, message)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "subclass": self.subclass,
            "command": self.command,
            "dry_run": self.dry_run,
            "status": self.status,
            "logs": [entry.to_dict() for entry in self.logs],
        }
        if self.started_at is not None:
            data["started_at"] = to_iso(self.started_at)
        if self.completed_at is not None:
            data["completed_at"] = to_iso(self.completed_at)
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class TrainingJob:
    profile: str
    dataset_path: str
    command_template: str
    tasks: List[TrainingTask]
    job_id: str = field(default_factory=lambda: uuid6.uuid7().hex)
    status: JobStatus = "running"
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    def aggregate_status(self) -> JobStatus:
        statuses = {task.status for task in self.tasks}
        if "failed" in statuses:
            return "failed"
        if "cancelled" in statuses:
            return "cancelled"
        return "succeeded"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "job_id": self.job_id,
            "profile": self.profile,
            "dataset_path": self.dataset_path,
            "command_template": self.command_template,
            "status": self.status,
            "started_at": to_iso(self.started_at),
            "tasks": [task.to_dict() for task in self.tasks],
        }
        if self.completed_at is not None:
            data["completed_at"] = to_iso(self.completed_at)
        return data
