from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class BrowserSpec(BaseModel):
    browser: str = Field(..., description="Browser name as understood by the worker API, e.g. firefox.")
    version: str
    os: str
    url: Optional[str] = None

    model_config = {"extra": "allow"}

    def label(self) -> str:
        return f"{self.browser} {self.version} ({self.os})"


class AssertionResult(BaseModel):
    name: str
    module: Optional[str] = None
    result: bool = True
    message: Optional[str] = None
    expected: Optional[Any] = None
    actual: Optional[Any] = None
    source: Optional[str] = None

    model_config = {"extra": "allow"}


class RawTestResult(BaseModel):
    failed: int = Field(..., ge=0)
    passed: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)
    runtime: Optional[float] = None
    tests: List[AssertionResult] = Field(default_factory=list)

    model_config = {"extra": "allow"}


class ResultSubmission(BaseModel):
    id: str
    result: RawTestResult


class TunnelState(str, Enum):
    starting = "starting"
    ready = "ready"
    failed = "failed"
    terminated = "terminated"


@dataclass(frozen=True)
class PortPair:
    asset_port: int
    collector_port: int

    def forwarding_spec(self) -> str:
        return f"localhost,{self.asset_port},0,localhost,{self.collector_port},0"


@dataclass
class RunRecord:
    id: str
    instance: BrowserSpec
    worker_handle: Optional[str] = None
    result_received: bool = False
    terminating: bool = False


@dataclass
class AggregateResult:
    total_runs: int = 0
    total_failed: int = 0

    def add(self, result: RawTestResult) -> None:
        self.total_runs += 1
        self.total_failed += result.failed

    def summary(self) -> str:
        return f"out of {self.total_runs} test runs, {self.total_failed} failed"

    @property
    def exit_code(self) -> int:
        return 0 if self.total_failed == 0 else 1


class ShutdownFlag:
    """Write-once marker shared by everything that needs to know a teardown began."""

    def __init__(self) -> None:
        self._set = False

    def set(self) -> bool:
        """Raise the flag; returns True only for the caller that raised it first."""
        if self._set:
            return False
        self._set = True
        return True

    def is_set(self) -> bool:
        return self._set
