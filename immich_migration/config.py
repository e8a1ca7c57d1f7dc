"""
Configuration management using dataclasses for type safety and validation.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, List
import uuid
import yaml
import json
import os
import jsonschema
import logging

from immich_migration.exceptions import ConfigurationError
from immich_migration.uploader.asset_uploader import DEFAULT_DIRECTORY_ALIASES, DEFAULT_PATH_PREFIX
from immich_migration.utils.state_manager import STEP_ORDER, StepKind

logger = logging.getLogger(__name__)


@dataclass
class ImmichConfig:
    """Immich server configuration."""
    api_base_url: str
    timeout: float = 300.0
    max_retries: int = 3

    def __post_init__(self):
        """Validate server configuration."""
        if not self.api_base_url:
            raise ValueError("api_base_url is required")
        if not self.api_base_url.startswith(('http://', 'https://')):
            raise ValueError(f"api_base_url must be an http(s) URL: {self.api_base_url}")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")


@dataclass
class UserConfig:
    """Credentials and legacy identity of one user."""
    api_key: str
    old_user_id: str

    def __post_init__(self):
        if not self.api_key:
            raise ValueError("api_key is required")
        try:
            uuid.UUID(self.old_user_id)
        except (TypeError, ValueError) as e:
            raise ValueError(f"old_user_id must be a UUID: {self.old_user_id}") from e


@dataclass
class SourceConfig:
    """Where the legacy export and the original files live."""
    db_files_dir: str
    dataset_dir: str
    path_prefix: str = DEFAULT_PATH_PREFIX
    directory_aliases: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_DIRECTORY_ALIASES))

    def __post_init__(self):
        if not self.db_files_dir:
            raise ValueError("db_files_dir is required")
        if not self.dataset_dir:
            raise ValueError("dataset_dir is required")

    @property
    def db_files_path(self) -> Path:
        return Path(self.db_files_dir)

    @property
    def dataset_path(self) -> Path:
        return Path(self.dataset_dir)

    @property
    def staging_path(self) -> Path:
        """Directory holding the per-user progress files."""
        return self.db_files_path / 'staging'


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: str = "migration.log"
    json: bool = False

    def __post_init__(self):
        """Validate logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.level.upper() not in valid_levels:
            raise ValueError(f"Invalid logging level: {self.level}. Must be one of {valid_levels}")


@dataclass
class MigrationConfig:
    """Main migration configuration."""
    user_to_migrate: str
    source: SourceConfig
    immich: ImmichConfig
    users: Dict[str, UserConfig]
    intended_steps: List[StepKind] = field(default_factory=lambda: list(STEP_ORDER))
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    show_progress: bool = True

    def __post_init__(self):
        if not self.user_to_migrate:
            raise ValueError("user_to_migrate is required")
        self.intended_steps = [StepKind.parse(s) for s in self.intended_steps]

    @property
    def selected_user(self) -> UserConfig:
        """Configuration of the user selected for this run."""
        user = self.users.get(self.user_to_migrate)
        if user is None:
            raise ConfigurationError(
                f"Selected user '{self.user_to_migrate}' does not have a configuration"
            )
        return user

    @property
    def progress_file(self) -> Path:
        return self.source.staging_path / f"{self.user_to_migrate}_progress.json"

    @property
    def metrics_file(self) -> Path:
        return self.source.staging_path / f"{self.user_to_migrate}_metrics.json"

    @classmethod
    def from_yaml(cls, config_path: str, validate: bool = True) -> 'MigrationConfig':
        """
        Load configuration from a YAML (or JSON) file.

        Args:
            config_path: Path to configuration file
            validate: Whether to validate against JSON schema

        Returns:
            MigrationConfig instance
        """
        try:
            with open(config_path, 'r') as f:
                config_dict = yaml.safe_load(f)
        except (yaml.YAMLError, IOError, OSError) as e:
            raise ValueError(f"Failed to load configuration file '{config_path}': {e}") from e

        if config_dict is None:
            raise ValueError(f"Configuration file '{config_path}' is empty or invalid")

        config_dict = cls._apply_env_overrides(config_dict)

        if validate:
            cls._validate_schema(config_dict)

        return cls.from_dict(config_dict)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'MigrationConfig':
        """
        Create configuration from dictionary.

        Args:
            config_dict: Configuration dictionary

        Returns:
            MigrationConfig instance
        """
        users = {
            name: UserConfig(**user_dict)
            for name, user_dict in (config_dict.get('users') or {}).items()
        }
        kwargs: Dict[str, Any] = {
            'user_to_migrate': config_dict.get('user_to_migrate', ''),
            'source': SourceConfig(**config_dict.get('source', {})),
            'immich': ImmichConfig(**config_dict.get('immich', {})),
            'users': users,
            'logging': LoggingConfig(**config_dict.get('logging', {})),
            'show_progress': config_dict.get('show_progress', True),
        }
        if config_dict.get('intended_steps') is not None:
            kwargs['intended_steps'] = config_dict['intended_steps']
        return cls(**kwargs)

    @staticmethod
    def _validate_schema(config_dict: Dict[str, Any]) -> None:
        """Validate configuration against JSON schema."""
        schema_path = Path(__file__).parent / 'config_schema.json'
        try:
            with open(schema_path, 'r') as f:
                schema = json.load(f)
        except (IOError, OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not load configuration schema for validation: {e}")
            return

        try:
            jsonschema.validate(instance=config_dict, schema=schema)
            logger.debug("Configuration validated against schema")
        except jsonschema.ValidationError as e:
            raise ValueError(
                f"Configuration validation failed: {e.message}\n"
                f"Path: {'.'.join(str(p) for p in e.path)}"
            ) from e

    @staticmethod
    def _apply_env_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration dictionary."""
        config = json.loads(json.dumps(config_dict))

        env_user = os.getenv('IMMICH_MIGRATION_USER')
        if env_user:
            config['user_to_migrate'] = env_user

        env_url = os.getenv('IMMICH_API_URL')
        if env_url:
            config.setdefault('immich', {})['api_base_url'] = env_url

        env_key = os.getenv('IMMICH_API_KEY')
        user = config.get('user_to_migrate')
        if env_key and user:
            config.setdefault('users', {}).setdefault(user, {})['api_key'] = env_key

        return config
