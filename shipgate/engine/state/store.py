"""Durable per-project workflow state with atomic writes and file locking."""

from __future__ import annotations

import fcntl
import json
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from shipgate.engine.config import require_non_negative_int
from shipgate.engine.fs import atomic_write_text
from shipgate.engine.sandbox.settings import SandboxSettings
from shipgate.engine.state.machine import WorkflowState

STATE_DIR = ".shipgate"
STATE_FILE = "state.json"
STATE_VERSION = "1.2"
DEFAULT_RETRY_BUDGET = 2
DEFAULT_POLICY_PACK = "default-balanced"

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    """Return the current UTC timestamp in ISO-8601 form."""
    return datetime.now(tz=UTC).isoformat()


@dataclass(frozen=True)
class PolicyRecord:
    """Which policy pack is active for the project."""

    active_pack: str = DEFAULT_POLICY_PACK
    hash: str = ""
    last_applied_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return JSON-serializable record."""
        return {
            "activePack": self.active_pack,
            "hash": self.hash,
            "lastAppliedAt": self.last_applied_at,
        }


@dataclass(frozen=True)
class SessionRecord:
    """Resume and debugging bookkeeping for the current build cycle."""

    current_task_id: str | None = None
    paused_at: str | None = None
    last_active_state: WorkflowState | None = None
    checkpoint_id: str | None = None
    last_failure_reason: str | None = None
    retry_budget: int = DEFAULT_RETRY_BUDGET

    def to_dict(self) -> dict[str, Any]:
        """Return JSON-serializable record."""
        return {
            "currentTaskId": self.current_task_id,
            "pausedAt": self.paused_at,
            "lastActiveState": (
                self.last_active_state.value if self.last_active_state is not None else None
            ),
            "checkpointId": self.checkpoint_id,
            "lastFailureReason": self.last_failure_reason,
            "retryBudget": self.retry_budget,
        }


@dataclass(frozen=True)
class TelemetryRecord:
    """Build counters and latency kept alongside the workflow state."""

    builds: int = 0
    build_failures: int = 0
    last_build_ms: int = 0
    last_slo_snapshot_at: str | None = None

    def with_build(self, duration_ms: int, *, succeeded: bool) -> TelemetryRecord:
        """Return a copy counting one more finished build attempt."""
        return TelemetryRecord(
            builds=self.builds + 1,
            build_failures=self.build_failures + (0 if succeeded else 1),
            last_build_ms=max(0, duration_ms),
            last_slo_snapshot_at=utc_now_iso(),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TelemetryRecord:
        """Parse the persisted telemetry block."""
        return cls(
            builds=require_non_negative_int(data.get("builds", 0), "builds"),
            build_failures=require_non_negative_int(
                data.get("buildFailures", 0), "buildFailures"
            ),
            last_build_ms=require_non_negative_int(data.get("lastBuildMs", 0), "lastBuildMs"),
            last_slo_snapshot_at=data.get("lastSloSnapshotAt"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return JSON-serializable record."""
        return {
            "builds": self.builds,
            "buildFailures": self.build_failures,
            "lastBuildMs": self.last_build_ms,
            "lastSloSnapshotAt": self.last_slo_snapshot_at,
        }


@dataclass(frozen=True)
class ProjectState:
    """Persisted workflow state for one project."""

    project_id: str
    state: WorkflowState = WorkflowState.IDLE
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    policy: PolicyRecord = field(default_factory=PolicyRecord)
    session: SessionRecord = field(default_factory=SessionRecord)
    telemetry: TelemetryRecord = field(default_factory=TelemetryRecord)
    version: str = STATE_VERSION

    @classmethod
    def default(cls) -> ProjectState:
        """Create a fresh IDLE project state."""
        return cls(project_id=uuid.uuid4().hex)

    def with_session(self, **changes: Any) -> ProjectState:
        """Return a copy with session fields replaced."""
        return replace(self, session=replace(self.session, **changes))

    def with_build_telemetry(self, duration_ms: int, *, succeeded: bool) -> ProjectState:
        """Return a copy with one more build attempt recorded."""
        return replace(
            self, telemetry=self.telemetry.with_build(duration_ms, succeeded=succeeded)
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectState:
        """Parse a persisted state payload."""
        project_id = data.get("projectId")
        if not isinstance(project_id, str) or not project_id.strip():
            raise ValueError("Project state is missing 'projectId'.")
        policy_raw = data.get("policy") or {}
        session_raw = data.get("session") or {}
        last_active = session_raw.get("lastActiveState")
        return cls(
            project_id=project_id,
            state=WorkflowState.parse(str(data.get("state", WorkflowState.IDLE.value))),
            sandbox=SandboxSettings.from_dict(data.get("sandbox") or {}),
            policy=PolicyRecord(
                active_pack=str(policy_raw.get("activePack", DEFAULT_POLICY_PACK)),
                hash=str(policy_raw.get("hash", "")),
                last_applied_at=policy_raw.get("lastAppliedAt"),
            ),
            session=SessionRecord(
                current_task_id=session_raw.get("currentTaskId"),
                paused_at=session_raw.get("pausedAt"),
                last_active_state=(
                    WorkflowState.parse(last_active) if last_active is not None else None
                ),
                checkpoint_id=session_raw.get("checkpointId"),
                last_failure_reason=session_raw.get("lastFailureReason"),
                retry_budget=require_non_negative_int(
                    session_raw.get("retryBudget", DEFAULT_RETRY_BUDGET), "retryBudget"
                ),
            ),
            telemetry=TelemetryRecord.from_dict(data.get("telemetry") or {}),
            version=str(data.get("version", STATE_VERSION)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return JSON-serializable state payload."""
        return {
            "version": self.version,
            "projectId": self.project_id,
            "state": self.state.value,
            "sandbox": self.sandbox.to_dict(),
            "policy": self.policy.to_dict(),
            "session": self.session.to_dict(),
            "telemetry": self.telemetry.to_dict(),
        }


class StateStore:
    """Reads and writes ``.shipgate/state.json`` for one project root."""

    def __init__(self, project_root: Path) -> None:
        """Bind the store to a project root directory."""
        self.project_root = project_root.expanduser().resolve()
        self.state_dir = self.project_root / STATE_DIR
        self.path = self.state_dir / STATE_FILE
        self._lock_path = self.state_dir / "build.lock"

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the project's exclusive lock for the duration of the block.

        One build attempt or operator command at a time may mutate the
        persisted state of a project.
        """
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock_path.open("a+", encoding="utf-8") as lock_handle:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)

    def load(self) -> ProjectState | None:
        """Return persisted state, or None when no state file exists."""
        if not self.path.is_file():
            return None
        payload = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Project state at {self.path} must be a JSON object.")
        return ProjectState.from_dict(payload)

    def save(self, state: ProjectState) -> None:
        """Durably replace the persisted state."""
        atomic_write_text(self.path, json.dumps(state.to_dict(), indent=2) + "\n")
        logger.debug("Saved project state %s at %s", state.state.value, self.path)

    def ensure(self) -> ProjectState:
        """Load state, creating and persisting a default one if absent."""
        current = self.load()
        if current is not None:
            return current
        created = ProjectState.default()
        self.save(created)
        return created
