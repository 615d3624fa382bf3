"""YAML configuration loading with include directive support."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import yaml
from platformdirs import user_config_dir
from pydantic_settings import BaseSettings, YamlConfigSettingsSource

from checkgate.core.errors import ConfigError
from checkgate.core.log import logger

PROJECT_CONFIG = "checkgate.yaml"
DEFAULTS_FILE = Path(__file__).parent.parent / "defaults" / "default.yaml"


def cli_includes(argv: list[str] | None = None) -> list[str]:
    """Collect --include values from argv before pydantic parses
    it."""
    argv = sys.argv if argv is None else argv
    includes = []
    i = 1
    while i < len(argv):
        if argv[i] == "--include" and i + 1 < len(argv):
            includes.append(argv[i + 1])
            i += 1
        elif argv[i].startswith("--include="):
            includes.append(argv[i].split("=", 1)[1])
        i += 1
    return includes


class YamlWithIncludesSettingsSource(YamlConfigSettingsSource):
    """YAML settings source with include: directive and --include
    CLI support.

    Deep merges, lowest priority first:
        package defaults < user config < project checkgate.yaml
        < explicit yaml_file / --include files.
    Files may pull in others with a top-level ``include:`` key; paths
    are relative to the including file.
    """

    def __init__(
        self,
        settings_cls: type[BaseSettings],
        yaml_file=None,
        use_defaults: bool = True,
    ):
        self.use_defaults = use_defaults

        includes = cli_includes()
        base = yaml_file or settings_cls.model_config.get("yaml_file")
        if base and includes:
            yaml_file = (
                [base] if isinstance(base, (str, os.PathLike)) else list(base)
            ) + includes
        elif includes:
            yaml_file = includes
        else:
            yaml_file = base

        super().__init__(settings_cls, yaml_file)

    def _read_files(self, files, *args, **kwargs):  # noqa: ARG002
        """Load every configuration layer that exists and merge them.

        Args:
            files: Explicit YAML file(s) and --include arguments

        Returns:
            Deep-merged dictionary of all loaded data
        """
        layers: list[Path] = []
        if self.use_defaults:
            layers.append(DEFAULTS_FILE)
            layers.append(
                Path(user_config_dir("checkgate", appauthor=False))
                / PROJECT_CONFIG
            )
            layers.append(Path(PROJECT_CONFIG))

        if files:
            if isinstance(files, (str, os.PathLike)):
                files = [files]
            for f in files:
                path = Path(f).expanduser()
                if path not in layers:
                    layers.append(path)

        result: dict = {}
        for path in layers:
            if not path.is_file():
                logger.debug(
                    "Configuration file not found (skipping)",
                    file=str(path),
                )
                continue
            with logger.span("Configuration loading", file=str(path)):
                data = self._load_file_recursive(path, set())
                result = deep_merge(result, data)

        return result

    def _load_file_recursive(
        self, filepath: Path, visited: set[Path]
    ) -> dict:
        """Load a file and resolve its include: directives.

        Raises:
            ConfigError: On a circular include or malformed YAML
        """
        filepath = filepath.resolve()
        if filepath in visited:
            raise ConfigError(f"Circular include: {filepath}")
        visited.add(filepath)

        try:
            with open(filepath, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {filepath}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(
                f"Top level of {filepath} must be a mapping"
            )

        includes = data.pop("include", None) or []
        if isinstance(includes, str):
            includes = [includes]

        for inc in includes:
            inc_path = self._resolve_path(inc, filepath)
            logger.debug(
                f"Including {inc_path.name}",
                included_from=str(filepath),
            )
            inc_data = self._load_file_recursive(inc_path, visited.copy())
            # The including file wins over what it includes
            data = deep_merge(inc_data, data)

        return data

    @staticmethod
    def _resolve_path(include_path: str, relative_to: Path) -> Path:
        path = Path(include_path).expanduser()
        if path.is_absolute():
            return path
        return (relative_to.parent / path).resolve()


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override into base (override wins). Lists are
    replaced, not concatenated."""
    result = base.copy()
    for key, value in override.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result
