"""Load optional runner configuration from `.team_runner/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_MAX_DURATION_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_STALE_AFTER_SECONDS,
    DEFAULT_TEMPLATE,
    STATE_DIR_NAME,
)
from .errors import ConfigError
from .io_utils import _load_data_with_error
from .models import WorkerSpec
from .utils import _coerce_float, _coerce_string_list, _snake_case


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if not path.exists():
        return {}, None
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def default_template() -> tuple[WorkerSpec, ...]:
    return tuple(WorkerSpec(worker_id=wid, after=tuple(after)) for wid, after in DEFAULT_TEMPLATE)


def parse_template(raw: Any) -> tuple[WorkerSpec, ...]:
    """Parse a `template:` config block into worker specs.

    Args:
        raw: List of `{id, after}` mappings (or bare ids).

    Returns:
        Worker specs in declaration order.

    Raises:
        ConfigError: If the block is not a list or an entry has no id.
    """
    if not isinstance(raw, list) or not raw:
        raise ConfigError("template must be a non-empty list of {id, after} entries")
    specs: list[WorkerSpec] = []
    for item in raw:
        if isinstance(item, str):
            item = {"id": item}
        if not isinstance(item, dict) or not str(item.get("id") or "").strip():
            raise ConfigError(f"template entry without id: {item!r}")
        after = tuple(_snake_case(a) for a in _coerce_string_list(item.get("after")))
        specs.append(WorkerSpec(worker_id=_snake_case(str(item["id"])), after=after))
    return tuple(specs)


@dataclass(frozen=True)
class RunnerSettings:
    """Resolved orchestration settings for a run."""

    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    stale_after_seconds: float = float(DEFAULT_STALE_AFTER_SECONDS)
    max_duration_seconds: float = float(DEFAULT_MAX_DURATION_SECONDS)
    archive_on_finish: bool = False
    default_command: Optional[str] = None
    worker_commands: dict[str, str] = field(default_factory=dict)
    worker_max_durations: dict[str, float] = field(default_factory=dict)
    template: tuple[WorkerSpec, ...] = field(default_factory=default_template)

    def command_for(self, worker_id: str) -> Optional[str]:
        return self.worker_commands.get(worker_id) or self.default_command

    def max_duration_for(self, worker_id: str) -> float:
        return self.worker_max_durations.get(worker_id, self.max_duration_seconds)

    def with_overrides(self, **overrides: Any) -> "RunnerSettings":
        """Return a copy with every non-None override applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **values) if values else self

    def to_dict(self) -> dict[str, Any]:
        """Serialize everything except the template, which the run plan carries."""
        return {
            "poll_interval_seconds": self.poll_interval_seconds,
            "stale_after_seconds": self.stale_after_seconds,
            "max_duration_seconds": self.max_duration_seconds,
            "archive_on_finish": self.archive_on_finish,
            "default_command": self.default_command,
            "worker_commands": dict(self.worker_commands),
            "worker_max_durations": dict(self.worker_max_durations),
        }

    @staticmethod
    def from_dict(
        data: dict[str, Any],
        *,
        template: Optional[tuple[WorkerSpec, ...]] = None,
        fallback: Optional["RunnerSettings"] = None,
    ) -> "RunnerSettings":
        """Rebuild settings persisted with a run; missing keys come from `fallback`."""
        base = fallback or RunnerSettings()
        commands = data.get("worker_commands")
        durations = data.get("worker_max_durations")
        return RunnerSettings(
            poll_interval_seconds=_coerce_float(data.get("poll_interval_seconds"), base.poll_interval_seconds),
            stale_after_seconds=_coerce_float(data.get("stale_after_seconds"), base.stale_after_seconds),
            max_duration_seconds=_coerce_float(data.get("max_duration_seconds"), base.max_duration_seconds),
            archive_on_finish=bool(data.get("archive_on_finish", base.archive_on_finish)),
            default_command=str(data.get("default_command") or "").strip() or base.default_command,
            worker_commands=(
                {str(k): str(v) for k, v in commands.items()} if isinstance(commands, dict) else dict(base.worker_commands)
            ),
            worker_max_durations=(
                {str(k): _coerce_float(v, base.max_duration_seconds) for k, v in durations.items()}
                if isinstance(durations, dict)
                else dict(base.worker_max_durations)
            ),
            template=tuple(template) if template is not None else base.template,
        )


def get_runner_settings(config: dict[str, Any]) -> RunnerSettings:
    """Resolve `RunnerSettings` from a loaded config mapping.

    Args:
        config: Runner configuration dictionary.

    Returns:
        Settings with defaults filled in for missing keys.

    Raises:
        ConfigError: If a value is present but invalid.
    """
    orchestrator = _as_dict(_get_nested(config, "orchestrator"))
    workers = _as_dict(_get_nested(config, "workers"))
    defaults = RunnerSettings()

    poll = _coerce_float(orchestrator.get("poll_interval_seconds"), defaults.poll_interval_seconds)
    stale = _coerce_float(orchestrator.get("stale_after_seconds"), defaults.stale_after_seconds)
    max_duration = _coerce_float(orchestrator.get("max_duration_seconds"), defaults.max_duration_seconds)
    if poll <= 0:
        raise ConfigError("orchestrator.poll_interval_seconds must be positive")
    if stale <= 0 or max_duration <= 0:
        raise ConfigError("orchestrator timeouts must be positive")

    commands: dict[str, str] = {}
    durations: dict[str, float] = {}
    for name, raw in _as_dict(workers.get("roles")).items():
        if not isinstance(name, str) or not name.strip():
            continue
        role = _as_dict(raw)
        worker_id = _snake_case(name)
        command = str(role.get("command") or "").strip()
        if command:
            commands[worker_id] = command
        if "max_duration_seconds" in role:
            value = _coerce_float(role.get("max_duration_seconds"), 0.0)
            if value <= 0:
                raise ConfigError(f"workers.roles.{name}.max_duration_seconds must be positive")
            durations[worker_id] = value

    default_command = str(workers.get("default_command") or "").strip() or None
    template = parse_template(config["template"]) if "template" in config else default_template()

    return RunnerSettings(
        poll_interval_seconds=poll,
        stale_after_seconds=stale,
        max_duration_seconds=max_duration,
        archive_on_finish=bool(orchestrator.get("archive_on_finish", False)),
        default_command=default_command,
        worker_commands=commands,
        worker_max_durations=durations,
        template=template,
    )


def load_runner_settings(project_dir: Path) -> RunnerSettings:
    """Load and resolve settings for `project_dir`.

    Raises:
        ConfigError: If the config file exists but cannot be parsed or is invalid.
    """
    config, err = load_runner_config(project_dir)
    if err:
        raise ConfigError(err)
    return get_runner_settings(config)
