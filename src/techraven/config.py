"""
techraven Configuration

Loads configuration from a YAML file and environment variables.
No module-level instance: call load_config() and pass the result along.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

logger = logging.getLogger(__name__)


# Default configuration file locations (checked in order)
CONFIG_SEARCH_PATHS = [
    Path.home() / ".techraven" / "techraven.yaml",
    Path("techraven.yaml"),
]


DEFAULT_CONFIG: Dict[str, Any] = {
    # Parsing
    "workers": min(os.cpu_count() or 2, 4),    # Parse pool size
    "tech_subdir": "common/technology",         # Relative to a game or mod root
    "file_glob": "*.txt",
    "encodings": ["utf-8-sig", "utf-8", "latin-1"],
    "max_file_size_bytes": 2_000_000,           # Skip files larger than this
    "max_parse_errors": 100,                    # Per-file recovery cap

    # Registry
    "default_areas": {
        "physics": "Physics",
        "society": "Society",
        "engineering": "Engineering",
    },

    # Logging
    "log_level": "INFO",
    "log_format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
}


ENV_OVERRIDES = {
    "TECHRAVEN_WORKERS": ("workers", int),
    "TECHRAVEN_LOG_LEVEL": ("log_level", str),
    "TECHRAVEN_TECH_SUBDIR": ("tech_subdir", str),
    "TECHRAVEN_MAX_FILE_SIZE": ("max_file_size_bytes", int),
}


class TechravenConfig:
    """Configuration for parsing, loading and the registry."""

    def __init__(self, config_path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None):
        self._config: Dict[str, Any] = {
            key: (dict(value) if isinstance(value, dict) else list(value) if isinstance(value, list) else value)
            for key, value in DEFAULT_CONFIG.items()
        }
        self._config_path: Optional[Path] = None

        # Load from file if found
        self._load_config(Path(config_path) if config_path else None)

        # Override with environment variables
        self._apply_env_overrides(os.environ if environ is None else environ)

    def _load_config(self, explicit_path: Optional[Path] = None) -> None:
        """Load configuration from YAML file."""
        search_paths = [explicit_path] if explicit_path else CONFIG_SEARCH_PATHS

        for config_path in search_paths:
            if config_path and config_path.exists():
                try:
                    with open(config_path, 'r', encoding='utf-8') as f:
                        user_config = yaml.safe_load(f) or {}
                except (OSError, yaml.YAMLError) as e:
                    logger.warning("Failed to load config from %s: %s", config_path, e)
                    continue
                if not isinstance(user_config, dict):
                    logger.warning("Ignoring config %s: top level is not a mapping", config_path)
                    continue
                self._config.update(user_config)
                self._config_path = config_path
                logger.debug("Loaded config from %s", config_path)
                return

    def _apply_env_overrides(self, environ) -> None:
        """Apply environment variable overrides."""
        for env_var, (config_key, convert) in ENV_OVERRIDES.items():
            if env_var in environ:
                try:
                    self._config[config_key] = convert(environ[env_var])
                except ValueError:
                    logger.warning("Ignoring %s=%r: expected %s", env_var, environ[env_var], convert.__name__)

    @property
    def config_path(self) -> Optional[Path]:
        """Path to loaded config file, or None if using defaults."""
        return self._config_path

    @property
    def workers(self) -> int:
        """Size of the parse worker pool (at least 1)."""
        return max(1, int(self._config.get("workers", 1)))

    @property
    def tech_subdir(self) -> str:
        return self._config.get("tech_subdir", "common/technology")

    @property
    def file_glob(self) -> str:
        return self._config.get("file_glob", "*.txt")

    @property
    def encodings(self) -> List[str]:
        return list(self._config.get("encodings") or DEFAULT_CONFIG["encodings"])

    @property
    def max_file_size(self) -> int:
        """Maximum file size to parse (bytes)."""
        return self._config.get("max_file_size_bytes", 2_000_000)

    @property
    def max_parse_errors(self) -> int:
        return self._config.get("max_parse_errors", 100)

    @property
    def default_areas(self) -> Dict[str, str]:
        return dict(self._config.get("default_areas") or {})

    @property
    def log_level(self) -> str:
        return str(self._config.get("log_level", "INFO")).upper()

    @property
    def log_format(self) -> str:
        return self._config.get("log_format", DEFAULT_CONFIG["log_format"])

    def get(self, key: str, default: Any = None) -> Any:
        """Get arbitrary config value."""
        return self._config.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary."""
        return dict(self._config)


def load_config(config_path: Optional[Union[str, Path]] = None) -> TechravenConfig:
    """Build a fresh configuration (defaults, then YAML, then environment)."""
    return TechravenConfig(Path(config_path) if config_path else None)


def configure_logging(config: TechravenConfig) -> None:
    """Apply the configured level and format. Only for applications, never on import."""
    level = getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(level=level, format=config.log_format)


def write_default_config(path: Union[str, Path]) -> Path:
    """Write a default configuration file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    header = "\n".join([
        "# techraven configuration",
        "#",
        "# Environment overrides: TECHRAVEN_WORKERS, TECHRAVEN_LOG_LEVEL,",
        "# TECHRAVEN_TECH_SUBDIR, TECHRAVEN_MAX_FILE_SIZE",
        "",
    ])
    with open(path, 'w', encoding='utf-8') as f:
        f.write(header)
        yaml.safe_dump(DEFAULT_CONFIG, f, default_flow_style=False, sort_keys=False)

    return path
