"""Application state and configuration."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from checkgate.checks.registry import CheckDefinition
from checkgate.core.base import BaseConfig
from checkgate.core.log import Logger
from checkgate.core.yaml_settings import YamlWithIncludesSettingsSource

# ============================================================
# TEMPLATE SUBSTITUTION NAMESPACE
# ============================================================

# Modules available for template substitution in YAML files
# Usage: {platformdirs.user_cache_dir}, {os.getcwd}, {Path.cwd}
TEMPLATE_NAMESPACE = {
    'os': os,
    'platformdirs': platformdirs,
    'Path': Path,
}

# ============================================================
# CONFIG MODELS (loaded from YAML/env/CLI)
# ============================================================

class RepoConfig(BaseConfig):
    """Repository and revision range under test."""

    workdir: Path = Field(
        default=Path("."),
        description="Path to the git working tree checks run against",
    )
    base_ref: str | None = Field(
        default=None,
        description=(
            "Branch the change is compared against (e.g. 'main'). "
            "Unset means a full scan."
        ),
    )
    head_ref: str = Field(
        default="HEAD",
        description="Revision under test",
    )
    remote: str = Field(
        default="origin",
        description="Remote consulted when base_ref is not a local branch",
    )
    fetch: bool = Field(
        default=False,
        description="Fetch base_ref from the remote before resolving it",
    )
    fallback: Literal["full_scan", "error"] = Field(
        default="full_scan",
        description=(
            "What to do when base_ref cannot be resolved: scan all "
            "tracked files, or fail the run"
        ),
    )


class GroupConfig(BaseConfig):
    """A named cluster of checks sharing a purpose."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="Group name shown in the report")
    checks: list[str] = Field(
        default_factory=list,
        description="Check ids belonging to this group, in run order",
    )
    skip: list[str] = Field(
        default_factory=list,
        description="Check ids never run as part of this group",
    )
    description: str = ""


class ExecutionConfig(BaseConfig):
    """Execution settings for a gate run."""

    concurrency: int = Field(
        default=4,
        ge=1,
        description="Maximum number of checks running at once",
    )
    timeout: float = Field(
        default=600.0,
        gt=0,
        description="Default per-check timeout in seconds",
    )
    output_dir: Path = Field(
        default=Path("{config.log_root}/runs"),
        description=(
            "Directory for per-check log files "
            "(supports {config.*} templates)"
        ),
    )
    report_json: Path | None = Field(
        default=None,
        description="Write the machine-readable report to this path",
    )
    strict_tools: bool = Field(
        default=False,
        description=(
            "Treat a missing check executable as a configuration "
            "error instead of an Errored check"
        ),
    )
    name: str = Field(
        default="gate",
        description="Run name, used for log directories and scoping",
    )


class CacheConfig(BaseConfig):
    """Environment cache settings."""

    enabled: bool = Field(
        default=True,
        description="Reuse environments built by check setup commands",
    )
    root: Path = Field(
        default_factory=(
            lambda: Path(platformdirs.user_cache_dir("checkgate",
                                                     appauthor=False))
        ),
        description="Directory holding cache entries",
    )
    max_entries: int | None = Field(
        default=None,
        ge=1,
        description=(
            "Prune least recently used entries beyond this count "
            "after each run"
        ),
    )


class Config(BaseConfig):
    """Application configuration loaded from YAML/env/CLI."""

    logger: Logger = Field(
        default=None,
        description="Logger configuration and runtime instance"
    )
    repo: RepoConfig = Field(
        default_factory=RepoConfig,
        description="Repository and revision settings",
    )
    checks: dict[str, CheckDefinition] = Field(
        default_factory=dict,
        description="Check definitions keyed by id",
    )
    groups: list[GroupConfig] = Field(
        default_factory=list,
        description="Check groups in report order",
    )
    execution: ExecutionConfig = Field(
        default_factory=ExecutionConfig,
        description="Execution settings",
    )
    caching: CacheConfig = Field(
        default_factory=CacheConfig,
        description="Environment cache settings",
    )
    log_root: Path = Field(
        default_factory=(
            lambda: Path(platformdirs.user_state_dir()) / "checkgate"
        ),
        description=(
            "Root directory for all log files "
            "(supports {platformdirs.*} templates)"
        ),
    )
    commands: dict[str, dict[str, str]] = Field(
        default_factory=dict,
        description=(
            "Command templates organized by category (git, ...)"
        ),
    )

    @model_validator(mode="before")
    @classmethod
    def _inject_check_ids(cls, data: Any) -> Any:
        """Checks are keyed by id in YAML; copy the key into each
        definition."""
        if isinstance(data, dict) and isinstance(data.get("checks"), dict):
            checks = {}
            for check_id, entry in data["checks"].items():
                if isinstance(entry, dict):
                    entry = {**entry, "id": entry.get("id", check_id)}
                checks[check_id] = entry
            data = {**data, "checks": checks}
        return data

    @model_validator(mode='after')
    def _setup_logger(self) -> Config:
        """Initialize the global logger singleton after config
        loads."""
        from checkgate.core.log import setup_logger

        if self.logger is None:
            self.logger = Logger()

        setup_logger(
            log_root=self.log_root,
            run_name=self.execution.name,
            console=self.logger.console,
            otlp=self.logger.otlp,
            file=self.logger.file,
            logfire=self.logger.logfire,
            level=self.logger.level,
        )
        return self

    def close(self):
        """Close config and the global logger singleton."""
        from checkgate.core.log import close_logger

        close_logger()
        super().close()


# ============================================================
# STATE (config + CLI options)
# ============================================================

class State(BaseSettings):
    """Complete application state: configuration plus the include
    list. Loaded once per process and fixed for the run."""

    config: Config = Field(
        default_factory=Config,
        description="Application configuration (from YAML/env/CLI)",
    )
    include: list[str] | None = Field(
        default=None,
        description=(
            "Additional YAML files to include and merge. "
            "Use --include on CLI or include: in YAML files."
        ),
    )

    model_config = SettingsConfigDict(
        yaml_file="checkgate.yaml",
        env_file=".env",
        env_prefix="CHECKGATE_",
        env_nested_delimiter="__",
        cli_implicit_flags=True,
        cli_use_class_docs_for_groups=True,
        arbitrary_types_allowed=True,
        extra='ignore'
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority order (highest first): init arguments, YAML with
        includes, .env, environment, file secrets."""
        return (
            init_settings,
            YamlWithIncludesSettingsSource(settings_cls),
            dotenv_settings,
            env_settings,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def substitute_templates(self) -> State:
        """Substitute {config.*} and {platformdirs.*} templates in
        every string and Path field."""
        self._substitute_recursive(self)
        return self

    def _substitute_recursive(self, obj: Any) -> None:
        if isinstance(obj, BaseModel):
            if obj.model_config.get("frozen"):
                return
            for field_name in obj.__class__.model_fields:
                value = getattr(obj, field_name)
                new_value = self._substitute_value(value)
                if new_value is not value:
                    setattr(obj, field_name, new_value)
        elif isinstance(obj, dict):
            for key in obj:
                obj[key] = self._substitute_value(obj[key])
        elif isinstance(obj, list):
            for i in range(len(obj)):
                obj[i] = self._substitute_value(obj[i])

    def _substitute_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._substitute_string(value)
        if isinstance(value, Path):
            return Path(self._substitute_string(str(value)))
        if isinstance(value, (BaseModel, dict, list)):
            self._substitute_recursive(value)
        return value

    def _substitute_string(self, value: str) -> str:
        """Replace {field.path} templates with field values.

        Unknown references (such as check placeholders like {files})
        are left unchanged.

        Examples:
            "{config.log_root}/runs" → "/home/user/.local/state/checkgate/runs"
            "{platformdirs.user_cache_dir}" → "~/.cache/checkgate"
        """
        def replace_template(match):
            parts = match.group(1).split(".")

            if parts[0] in TEMPLATE_NAMESPACE:
                obj = TEMPLATE_NAMESPACE[parts[0]]
                parts = parts[1:]
            elif len(parts) > 1:
                obj = self
            else:
                return match.group(0)

            try:
                for part in parts:
                    obj = getattr(obj, part)
                if callable(obj):
                    obj = obj('checkgate', appauthor=False)
                return str(obj)
            except (AttributeError, TypeError):
                return match.group(0)

        return re.sub(r'\{([a-z._]+)\}', replace_template, value)


def load_state(*yaml_files: str | Path, **overrides) -> State:
    """Build a State without parsing the process command line.

    Used by tests and library callers; the CLI goes through CliApp.
    """
    class _FileState(State):
        model_config = SettingsConfigDict(
            yaml_file=[str(f) for f in yaml_files] or None,
        )

    return _FileState(**overrides)


__all__ = [
    "State",
    "Config",
    "RepoConfig",
    "GroupConfig",
    "ExecutionConfig",
    "CacheConfig",
    "BaseConfig",
    "load_state",
]
