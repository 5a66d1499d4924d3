"""Configuration management for Timeline.

Storage Structure
-----------------
~/.timeline/                  # Per-user state (TIMELINE_HOME overrides)
├── config.yaml               # Tuning overrides (non-default values only)
├── logs/timeline.log         # Operator-visible log (rotating)
└── queue/
    ├── pending.jsonl         # Deferred capture requests
    ├── processor.lock        # Advisory drain lock (single timestamp)
    └── dead-letter.jsonl     # Requests that exhausted their retries

Nothing is created on import. Directories appear on first write.

**TimelineConfig** is passed explicitly to every component; no module reads
global paths on its own.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

DEFAULT_STATE_DIR = Path.home() / ".timeline"
CONFIG_FILENAME = "config.yaml"


def default_state_dir() -> Path:
    """State directory, honoring the TIMELINE_HOME environment variable."""
    if env_home := os.environ.get("TIMELINE_HOME"):
        return Path(env_home).expanduser()
    return DEFAULT_STATE_DIR


@dataclass
class TimelineConfig:
    """Tunable parameters and state paths.

    The wait budget, retry ceiling and staleness threshold were tuned
    empirically; none of the numbers are load-bearing for correctness.
    """

    # LockGuard
    wait_budget_ms: int = 3000
    backoff_base_ms: int = 50
    backoff_cap_ms: int = 1000

    # DeferredQueue
    max_retries: int = 5
    stale_lock_seconds: float = 30.0
    drain_on_save: bool = True

    # Backend layout
    ref_namespace: str = "refs/heads/timelines"
    notes_ref: str = "timeline-metadata"

    log_level: str = "INFO"

    state_dir: Path = field(default_factory=default_state_dir, metadata={"persist": False})

    @property
    def queue_dir(self) -> Path:
        return self.state_dir / "queue"

    @property
    def queue_file(self) -> Path:
        return self.queue_dir / "pending.jsonl"

    @property
    def lock_file(self) -> Path:
        return self.queue_dir / "processor.lock"

    @property
    def dead_letter_file(self) -> Path:
        return self.queue_dir / "dead-letter.jsonl"

    @property
    def log_file(self) -> Path:
        return self.state_dir / "logs" / "timeline.log"

    @classmethod
    def load(cls, state_dir: Path | None = None) -> "TimelineConfig":
        """Load config from ``<state_dir>/config.yaml``.

        Args:
            state_dir: State directory. Defaults to TIMELINE_HOME or ~/.timeline

        Returns:
            TimelineConfig with values from file, or defaults if not found
        """
        state_dir = Path(state_dir) if state_dir is not None else default_state_dir()
        config_path = state_dir / CONFIG_FILENAME
        if config_path.exists():
            with open(config_path) as f:
                overrides = yaml.safe_load(f) or {}
            if not isinstance(overrides, dict):
                overrides = {}
            # Only apply known fields - use dataclass fields, not hasattr (security)
            valid_overrides = {k: v for k, v in overrides.items() if k in _persisted_fields()}
            return cls(state_dir=state_dir, **valid_overrides)
        return cls(state_dir=state_dir)

    def save(self) -> Path:
        """Save non-default values to ``<state_dir>/config.yaml``.

        Returns:
            Path to saved config file
        """
        from timeline.atomic import atomic_write_yaml

        config_path = self.state_dir / CONFIG_FILENAME
        defaults = TimelineConfig(state_dir=self.state_dir)
        data = {
            key: value
            for key, value in self.to_dict().items()
            if getattr(defaults, key) != value
        }
        if not data:
            data = {"_version": 1}  # Marker that config was explicitly saved

        result = atomic_write_yaml(config_path, data)
        if result.is_err():
            raise OSError(result.unwrap_err().message)
        return config_path

    def to_dict(self) -> dict[str, Any]:
        """Persisted fields as a plain dict."""
        return {name: getattr(self, name) for name in _persisted_fields()}


def _persisted_fields() -> tuple[str, ...]:
    return tuple(f.name for f in fields(TimelineConfig) if f.metadata.get("persist", True))


def coerce_value(key: str, value: str) -> Any:
    """Convert a CLI string to the type of the named config field.

    Raises:
        KeyError: unknown key
        ValueError: value does not parse as the field's type
    """
    defaults = TimelineConfig(state_dir=Path("."))
    if key not in _persisted_fields():
        raise KeyError(key)
    current = getattr(defaults, key)
    if isinstance(current, bool):
        lowered = value.lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off"):
            return False
        raise ValueError(f"Expected a boolean for {key}, got {value!r}")
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value
