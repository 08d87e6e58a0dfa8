"""Project-scoped sandbox configuration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from shipgate.engine.config import validate_sandbox_profile, validate_sandbox_provider


@dataclass(frozen=True)
class SandboxSettings:
    """Isolation settings consulted by the command executor."""

    enabled: bool = False
    provider: str = "none"
    profile: str = "off"

    def __post_init__(self) -> None:
        """Validate provider and profile choices."""
        validate_sandbox_provider(self.provider)
        validate_sandbox_profile(self.profile)

    @property
    def uses_container(self) -> bool:
        """Return whether commands should first run inside a container."""
        return self.enabled and self.provider != "none" and self.profile != "off"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SandboxSettings:
        """Build settings from persisted JSON."""
        return cls(
            enabled=bool(data.get("enabled", False)),
            provider=str(data.get("provider", "none")),
            profile=str(data.get("profile", "off")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return JSON-serializable settings."""
        return {"enabled": self.enabled, "provider": self.provider, "profile": self.profile}

    def status(self) -> str:
        """Render a one-line status summary."""
        return f"enabled={self.enabled} provider={self.provider} profile={self.profile}"
