"""
Settings for podcache.

Read from an optional YAML file (section "podcache:") and overridden by
environment variables, which may also come from a .env file:

    PODCACHE_DATA_DIR=data
    PODCACHE_BASE_URL=http://localhost:8080
    PODCACHE_DATABASE=data/podcache.db
    PODCACHE_TIMEOUT=30            # seconds, "none" to disable
    PODCACHE_USER_AGENT=podcache/1.0
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import yaml
from dotenv import load_dotenv

from podcache.common.downloader import DEFAULT_TIMEOUT, DEFAULT_USER_AGENT

DEFAULT_CONFIG_FILE = 'podcache.yaml'


@dataclass
class Settings:
    data_dir: Path = field(default_factory=lambda: Path('data'))
    base_url: str = 'http://localhost:8080'
    database: Optional[Path] = None
    timeout: Optional[float] = DEFAULT_TIMEOUT
    user_agent: str = DEFAULT_USER_AGENT

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        if self.database is None:
            self.database = self.data_dir / 'podcache.db'
        else:
            self.database = Path(self.database)


def _parse_timeout(value) -> Optional[float]:
    if value is None or str(value).strip().lower() in ('', 'none', 'off', '0'):
        return None
    return float(value)


def load_settings(config_path: Optional[Union[str, Path]] = None) -> Settings:
    """
    Load settings from YAML and the environment.

    Args:
        config_path: YAML file to read. Defaults to podcache.yaml in the working
            directory, which is skipped if it does not exist.

    Returns:
        Settings

    Raises:
        FileNotFoundError: If an explicitly given config file does not exist
        ValueError: If the config file is not a mapping or a value is invalid
    """
    load_dotenv()

    values = {}
    path = Path(config_path) if config_path else Path(DEFAULT_CONFIG_FILE)

    if config_path or path.exists():
        with open(path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
        if not isinstance(config, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        section = config.get('podcache', {}) or {}
        if not isinstance(section, dict):
            raise ValueError(f"'podcache' section of {path} must be a mapping")
        values.update(section)

    env = {
        'data_dir': os.getenv('PODCACHE_DATA_DIR'),
        'base_url': os.getenv('PODCACHE_BASE_URL'),
        'database': os.getenv('PODCACHE_DATABASE'),
        'timeout': os.getenv('PODCACHE_TIMEOUT'),
        'user_agent': os.getenv('PODCACHE_USER_AGENT'),
    }
    values.update({key: value for key, value in env.items() if value is not None})

    if 'timeout' in values:
        values['timeout'] = _parse_timeout(values['timeout'])

    unknown = set(values) - set(Settings.__dataclass_fields__)
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

    return Settings(**values)
