"""Configuration loading and validation."""

import logging
import os
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from .sprint import Sprint
from .task import Persona, Task, TaskPriority

logger = logging.getLogger(__name__)


def _normalize_persona(v: Any) -> Any:
    """Accept "developer", "Release Manager", "RELEASE_MANAGER", ..."""
    if not isinstance(v, str):
        return v
    return v.strip().upper().replace(" ", "").replace("_", "")


class AssignmentConfig(BaseModel):
    """Agent assignment settings."""
    poll_interval: float = 1.0
    # Agents holding a task longer than this are reclaimed; None disables
    agent_timeout_seconds: Optional[int] = 3600

    @field_validator("agent_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError(f"agent_timeout_seconds must be positive, got {v}")
        return v


class CacheConfig(BaseModel):
    """Context cache settings."""
    backend: Literal["memory", "file"] = "file"
    directory: str = "cache"  # relative to the state directory
    ttl_seconds: Optional[int] = None


class SyncConfig(BaseModel):
    """Issue synchronizer settings."""
    enabled: bool = True
    max_retries: int = 2
    backoff_initial: float = 1.0
    backoff_max: float = 30.0
    backoff_multiplier: float = 2.0
    latency_window: int = 50
    poll_interval: float = 0.1

    @field_validator("max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"max_retries must be >= 0, got {v}")
        if v > 10:
            logger.warning(
                f"sync.max_retries is very high ({v}). "
                "A long outage will keep events queued for a long time."
            )
        return v

    @field_validator("latency_window")
    @classmethod
    def validate_window(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"latency_window must be >= 1, got {v}")
        return v


class GitHubConfig(BaseModel):
    """GitHub issues configuration."""
    token: str
    owner: str
    repo: str
    labels: List[str] = Field(default_factory=lambda: ["agent-fleet"])


class JIRAConfig(BaseModel):
    """JIRA configuration."""
    server: str
    email: str
    api_token: str
    project: str
    issue_type: str = "Task"
    labels: List[str] = Field(default_factory=lambda: ["agent-fleet"])
    # Transition ids by name; "done" closes, "reopen" reopens
    transitions: Dict[str, str] = Field(default_factory=dict)


class TrackerConfig(BaseModel):
    """Which issue tracker mirrors task state."""
    provider: Literal["memory", "github", "jira"] = "memory"
    github: Optional[GitHubConfig] = None
    jira: Optional[JIRAConfig] = None

    @model_validator(mode="after")
    def validate_provider(self) -> "TrackerConfig":
        if self.provider == "github" and self.github is None:
            raise ValueError("tracker.provider is 'github' but no 'github' section was given")
        if self.provider == "jira" and self.jira is None:
            raise ValueError("tracker.provider is 'jira' but no 'jira' section was given")
        return self


class LoggingConfig(BaseModel):
    level: str = "INFO"
    use_colors: bool = True
    use_file: bool = True
    use_json: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level '{v}'")
        return v


class AgentDefinition(BaseModel):
    """Agent definition from the ``agents`` list."""
    id: str
    persona: Persona
    enabled: bool = True
    replicas: int = 1

    @field_validator("persona", mode="before")
    @classmethod
    def normalize_persona(cls, v: Any) -> Any:
        return _normalize_persona(v)

    def agent_ids(self) -> List[str]:
        if self.replicas <= 1:
            return [self.id]
        return [f"{self.id}-{i}" for i in range(1, self.replicas + 1)]


class FleetConfig(BaseSettings):
    """Main fleet configuration."""
    workspace: Path = Field(default=Path("."))
    state_dir: str = ".fleet"
    # Subdirectories created automatically:
    # - .fleet/tasks/ (+ archived/)
    # - .fleet/cache/
    # - .fleet/logs/executions/

    assignment: AssignmentConfig = Field(default_factory=AssignmentConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    agents: List[AgentDefinition] = Field(default_factory=list)

    class Config:
        env_prefix = "FLEET_"
        env_file = ".env"
        env_nested_delimiter = "__"
        extra = "allow"

    @property
    def state_path(self) -> Path:
        return self.workspace / self.state_dir

    @property
    def tasks_path(self) -> Path:
        return self.state_path / "tasks"

    @property
    def cache_path(self) -> Path:
        return self.state_path / self.cache.directory

    @property
    def logs_path(self) -> Path:
        return self.state_path / "logs"


class WorkflowTaskDefinition(BaseModel):
    """One task entry of a workflow file."""
    id: str
    title: str
    description: str = ""
    persona: Persona
    priority: TaskPriority = TaskPriority.MEDIUM
    depends_on: List[str] = Field(default_factory=list)

    @field_validator("persona", mode="before")
    @classmethod
    def normalize_persona(cls, v: Any) -> Any:
        return _normalize_persona(v)

    @field_validator("priority", mode="before")
    @classmethod
    def normalize_priority(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class SprintDefinition(BaseModel):
    id: str
    name: str
    start_date: date
    end_date: date
    task_ids: List[str] = Field(default_factory=list)


class WorkflowDefinition(BaseModel):
    """A workflow file: tasks (with dependencies) and optional sprints."""
    id: str
    description: str = ""
    tasks: List[WorkflowTaskDefinition]
    sprints: List[SprintDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_ids(self) -> "WorkflowDefinition":
        seen = set()
        for task in self.tasks:
            if task.id in seen:
                raise ValueError(f"Duplicate task id '{task.id}' in workflow '{self.id}'")
            seen.add(task.id)
        return self

    def to_tasks(self) -> List[Task]:
        """Fresh pending tasks, ready for DependencyScheduler.register_tasks()."""
        return [
            Task(
                id=t.id,
                title=t.title,
                description=t.description,
                persona=t.persona,
                priority=t.priority,
                depends_on=list(t.depends_on),
                workflow_id=self.id,
            )
            for t in self.tasks
        ]

    def to_sprints(self) -> List[Sprint]:
        return [
            Sprint(
                id=s.id,
                name=s.name,
                start_date=s.start_date,
                end_date=s.end_date,
                task_ids=list(s.task_ids),
            )
            for s in self.sprints
        ]


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _load_config_from_file(config_path: Path) -> FleetConfig:
    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    data = _expand_env_vars(data)
    return FleetConfig(**data)


def load_config(config_path: Path = Path("config/fleet.yaml")) -> FleetConfig:
    """Load fleet configuration from YAML file.

    Uses mtime-based caching: returns the cached config if the file hasn't changed.
    """
    if not config_path.exists():
        logger.warning(
            f"Config file not found: {config_path}. Using default configuration. "
            "To customize settings, create a config file at this path."
        )
        return FleetConfig()

    result = _get_cached_or_load(config_path.resolve(), _load_config_from_file)
    return result if result is not None else FleetConfig()


def _load_workflow_from_file(workflow_path: Path) -> WorkflowDefinition:
    with open(workflow_path) as f:
        data = yaml.safe_load(f) or {}
    data = _expand_env_vars(data)
    if "id" not in data:
        data["id"] = workflow_path.stem
    return WorkflowDefinition(**data)


def load_workflow(workflow_path: Path) -> WorkflowDefinition:
    """Load a workflow definition (tasks and sprints) from YAML."""
    if not workflow_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {workflow_path}")
    result = _get_cached_or_load(workflow_path.resolve(), _load_workflow_from_file)
    if result is None:
        raise FileNotFoundError(f"Workflow file not found: {workflow_path}")
    return result


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ``${VAR}`` references in config data.

    Args:
        data: Config data to process
        _path: Internal tracking for error messages (e.g., "tracker.github.token")
    """
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used, which may cause errors."
            )
            return data
        return value
    return data
