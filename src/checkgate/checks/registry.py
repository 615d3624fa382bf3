"""Check definitions and the registry holding them."""

from __future__ import annotations

import shlex
from collections.abc import Iterable, Mapping
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator

from checkgate.core.errors import (
    ConfigError,
    DuplicateIdError,
    NotFoundError,
    RegistrySealedError,
)
from checkgate.core.log import logger

if TYPE_CHECKING:
    from checkgate.core.config import GroupConfig


class Category(str, Enum):
    """What kind of quality concern a check covers."""

    FILE_QUALITY = "file_quality"
    SECURITY = "security"
    BACKEND_LINT = "backend_lint"
    FRONTEND_LINT = "frontend_lint"
    CUSTOM = "custom"


class CheckDefinition(BaseModel):
    """Immutable description of one check.

    ``command`` is an argv list whose items may contain placeholders
    filled in at run time: {files}, {base}, {head}, {workdir},
    {cache_dir} and {mode}. An item that is exactly ``{files}``
    expands to one argument per matched path. ``full_command``, when
    set, replaces ``command`` in full-scan mode, where {files} is
    empty. Placeholders are also expanded in ``env`` values.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    category: Category = Category.CUSTOM
    command: tuple[str, ...] = Field(min_length=1)
    full_command: tuple[str, ...] | None = Field(
        default=None,
        description="Argv used instead of command in full-scan mode",
    )
    paths: frozenset[str] = Field(
        default=frozenset(),
        description="Glob patterns; empty matches every path",
    )
    excludes: frozenset[str] = Field(
        default=frozenset(),
        description="Check ids this check is mutually exclusive with",
    )
    workdir: Path | None = Field(
        default=None,
        description="Directory relative to the repository to run in",
    )
    env: tuple[tuple[str, str], ...] = ()
    timeout: float | None = Field(default=None, gt=0)
    setup: tuple[str, ...] | None = Field(
        default=None,
        description="Environment setup argv, cached by cache_inputs",
    )
    cache_inputs: tuple[str, ...] = Field(
        default=(),
        description="Files whose content defines the setup environment",
    )
    description: str = ""

    @field_validator("command", "full_command", "setup", mode="before")
    @classmethod
    def _split_string_command(cls, value):
        if isinstance(value, str):
            return tuple(shlex.split(value))
        return value

    @field_validator("paths", "excludes", mode="before")
    @classmethod
    def _single_pattern(cls, value):
        if isinstance(value, str):
            return frozenset([value])
        return value

    @field_validator("env", mode="before")
    @classmethod
    def _env_items(cls, value):
        if isinstance(value, Mapping):
            return tuple(sorted((str(k), str(v)) for k, v in value.items()))
        return value

    @property
    def environment(self) -> dict[str, str]:
        return dict(self.env)

    @property
    def tool(self) -> str:
        """Identity of the tool providing the environment."""
        return Path(self.command[0]).name


class CheckRegistry:
    """Catalog of check definitions.

    Registration order is preserved so plans are reproducible. The
    registry is sealed once loading is done; later registration is
    an error.
    """

    def __init__(self):
        self._checks: dict[str, CheckDefinition] = {}
        self._sealed = False

    def register(self, definition: CheckDefinition) -> None:
        """Register a check.

        Raises:
            RegistrySealedError: If the registry is sealed
            DuplicateIdError: If the id is already registered
        """
        if self._sealed:
            raise RegistrySealedError(
                f"Cannot register '{definition.id}': registry is sealed"
            )
        if definition.id in self._checks:
            raise DuplicateIdError(definition.id)
        self._checks[definition.id] = definition

    def lookup(self, check_id: str) -> CheckDefinition:
        """Retrieve a check by id.

        Raises:
            NotFoundError: If the id is not registered
        """
        try:
            return self._checks[check_id]
        except KeyError:
            raise NotFoundError(check_id) from None

    def all(self) -> list[CheckDefinition]:
        """All checks in registration order."""
        return list(self._checks.values())

    def order_of(self, check_id: str) -> int:
        """Registration position of a check."""
        for index, known in enumerate(self._checks):
            if known == check_id:
                return index
        raise NotFoundError(check_id)

    def seal(self) -> None:
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def __contains__(self, check_id: object) -> bool:
        return check_id in self._checks

    def __len__(self) -> int:
        return len(self._checks)

    @classmethod
    def from_config(
        cls,
        checks: Mapping[str, CheckDefinition] | Iterable[CheckDefinition],
        groups: Iterable[GroupConfig] = (),
    ) -> CheckRegistry:
        """Build and seal a registry, validating group references.

        Raises:
            ConfigError: On unknown ids in groups, skip lists or
                excludes, or duplicate group names
        """
        registry = cls()
        definitions = (
            checks.values() if isinstance(checks, Mapping) else checks
        )
        for definition in definitions:
            registry.register(definition)

        for definition in registry.all():
            unknown = sorted(definition.excludes - set(registry._checks))
            if unknown:
                raise ConfigError(
                    f"Check '{definition.id}' excludes unknown checks: "
                    f"{', '.join(unknown)}"
                )

        seen: set[str] = set()
        for group in groups:
            if group.name in seen:
                raise ConfigError(f"Duplicate group name '{group.name}'")
            seen.add(group.name)
            for check_id in [*group.checks, *group.skip]:
                if check_id not in registry:
                    raise ConfigError(
                        f"Group '{group.name}' references unknown "
                        f"check '{check_id}'"
                    )

        registry.seal()
        logger.debug(
            f"Loaded {len(registry)} checks",
            checks=[d.id for d in registry.all()],
        )
        return registry


__all__ = ["Category", "CheckDefinition", "CheckRegistry"]
