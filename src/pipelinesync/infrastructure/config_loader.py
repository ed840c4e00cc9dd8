"""
Configuration loader module.

Loads and validates the JSON configuration files:
- settings.json: CRM connection, datasets, caps, lock and runtime limits
- directory.json: owners, groups and the interactive-command allowlist

Relative paths inside the files resolve against the config directory.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from pipelinesync.domain.config import Directory, DirectoryConfig, SyncSettings
from pipelinesync.domain.errors import ConfigurationError

logger = logging.getLogger(__name__)


def load_json_file(filepath: Path, required: bool = True) -> dict | None:
    """
    Load and parse a JSON file with robust error handling.

    Provides clear error messages for common failure scenarios:
    - File not found
    - File corrupted (invalid JSON syntax)
    - File empty
    - Permission denied

    Args:
        filepath: Absolute or relative path to JSON file
        required: If True, raises on a missing file. If False, returns None.

    Returns:
        Parsed JSON as dict, or None if optional file not found

    Raises:
        ConfigurationError: For any of the failure scenarios above
    """
    if not filepath.exists():
        if required:
            raise ConfigurationError(
                f"Configuration file not found: {filepath}\n"
                f"Hint: Copy the .example.json file and customize it."
            )
        logger.debug("Optional config not found: %s", filepath)
        return None

    try:
        content = filepath.read_text(encoding="utf-8")
    except PermissionError as e:
        raise ConfigurationError(
            f"Cannot read config file (permission denied): {filepath}\n"
            f"Hint: Check file permissions or if another process has it locked."
        ) from e

    if not content.strip():
        raise ConfigurationError(
            f"Configuration file is empty: {filepath}\n"
            f"Hint: Add valid JSON content or copy from .example.json"
        )

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Invalid JSON in config file: {filepath}\n"
            f"Error at line {e.lineno}, column {e.colno}: {e.msg}\n"
            f"Hint: Validate JSON syntax. Note: .json files cannot have comments."
        ) from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file must contain a JSON object: {filepath}")
    return data


def _describe_validation_error(filepath: Path, error: ValidationError) -> str:
    lines = [f"Invalid configuration in {filepath}:"]
    for issue in error.errors():
        location = ".".join(str(part) for part in issue["loc"]) or "(root)"
        lines.append(f"  - {location}: {issue['msg']}")
    return "\n".join(lines)


class ConfigLoader:
    """
    Load and validate configuration files.

    Provides typed access to settings and the owner/group directory.
    """

    def __init__(self, config_dir: str | Path = "config"):
        self.config_dir = Path(config_dir)
        logger.debug("ConfigLoader initialized with directory: %s", self.config_dir)

    def _resolve(self, path: Path | None) -> Path | None:
        if path is None:
            return None
        path = path.expanduser()
        if path.is_absolute():
            return path
        return self.config_dir / path

    def load_settings(self, filename: str = "settings.json") -> SyncSettings:
        """
        Load engine settings.

        A missing settings file is not an error: every setting has a
        default.

        Raises:
            ConfigurationError: If the file is unreadable or invalid
        """
        filepath = self.config_dir / filename
        data = load_json_file(filepath, required=False)
        if data is None:
            logger.info("No %s found, using default settings", filename)
            data = {}

        try:
            settings = SyncSettings.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(_describe_validation_error(filepath, e)) from e

        settings.lock.path = self._resolve(settings.lock.path)
        settings.crm.secrets_file = self._resolve(settings.crm.secrets_file)

        logger.info(
            "Loaded settings: %d dataset(s), aggregate cap %d",
            len(settings.datasets),
            settings.aggregate_max_rows,
        )
        return settings

    def load_directory(self, filename: str = "directory.json") -> Directory:
        """
        Load the owner/group directory and build its lookup indexes.

        Raises:
            ConfigurationError: If the file is missing, unreadable or invalid
        """
        filepath = self.config_dir / filename
        logger.info("Loading directory from: %s", filepath)
        data = load_json_file(filepath, required=True)

        try:
            config = DirectoryConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(_describe_validation_error(filepath, e)) from e

        for owner in config.owners:
            owner.store_path = self._resolve(owner.store_path)
        for group in config.groups:
            group.store_path = self._resolve(group.store_path)

        directory = config.build()
        logger.info(
            "Loaded directory: %d owner(s), %d group(s)",
            len(directory.owners),
            len(directory.groups),
        )
        return directory

    def validate_config(self) -> list[str]:
        """
        Validate all configuration files.

        Returns:
            List of problems found; empty when everything is valid
        """
        problems: list[str] = []

        try:
            self.load_settings()
        except ConfigurationError as e:
            problems.append(str(e))

        try:
            directory = self.load_directory()
        except ConfigurationError as e:
            problems.append(str(e))
        else:
            problems.extend(_directory_problems(directory))

        if problems:
            for problem in problems:
                logger.error("%s", problem)
        else:
            logger.info("Configuration is valid")
        return problems


def _directory_problems(directory: Directory) -> list[str]:
    problems: list[str] = []
    group_names = {g.name.lower() for g in directory.groups}
    seen_emails: set[str] = set()

    for owner in directory.owners:
        key = owner.email.lower()
        if key in seen_emails:
            problems.append(f"Duplicate owner e-mail: {owner.email}")
        seen_emails.add(key)
        if owner.group and owner.group.lower() not in group_names:
            problems.append(f"Owner {owner.name!r} references unknown group {owner.group!r}")

    for group in directory.groups:
        if not directory.members(group):
            problems.append(f"Group {group.name!r} has no enabled members")
        for owner in directory.members(group):
            if _same_file(owner.store_path, group.store_path):
                problems.append(
                    f"Owner {owner.name!r} and group {group.name!r} share a workbook"
                )
    return problems


def _same_file(a: Any, b: Any) -> bool:
    return Path(a).expanduser().resolve() == Path(b).expanduser().resolve()
