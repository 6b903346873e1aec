"""
Configuration and logging setup for the JQL engine.

Settings come from an optional YAML file and are then overridden by
environment variables, so a deployment can keep one file for defaults and
inject credentials through the environment.
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .resolver import parse_project_mapping


logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR')


@dataclass
class Settings:
    """Runtime configuration.

    Attributes:
        es_host: Elasticsearch node URL
        es_username: Basic auth user; auth is skipped when empty
        es_password: Basic auth password
        es_ca_cert: Optional CA bundle path for TLS
        request_timeout: Per-request timeout in seconds
        max_retries: Transport-level retries of the Elasticsearch client
        allowed_indexes: Index names and wildcard patterns callers may query
        project_index_mapping: Lowercase project name to index name
        saved_queries_path: JSON file backing the saved query store
        max_pairs_per_key: Optional cap on joined pairs per join key
        log_level: Root log level
        log_file: Optional file mirroring the log output
    """
    es_host: str = 'http://localhost:9200'
    es_username: str = ''
    es_password: str = ''
    es_ca_cert: Optional[str] = None
    request_timeout: int = 30
    max_retries: int = 3
    allowed_indexes: List[str] = field(default_factory=list)
    project_index_mapping: Dict[str, str] = field(default_factory=dict)
    saved_queries_path: str = 'data/saved_queries.json'
    max_pairs_per_key: Optional[int] = None
    log_level: str = 'INFO'
    log_file: Optional[str] = None


def _split_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(',') if item.strip()]


def _load_yaml(path: str | Path) -> Dict[str, Any]:
    """Load a YAML config file into a dictionary."""
    with open(path, 'r') as f:
        content = yaml.safe_load(f)

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return content


def load_settings(
    config_path: Optional[str | Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Build settings from a YAML file and environment overrides.

    Args:
        config_path: Optional YAML file; JQL_ENGINE_CONFIG is used when unset
        env: Environment mapping (defaults to os.environ)

    Returns:
        The resolved Settings

    Raises:
        ValueError: If the file or a value is malformed
    """
    env = os.environ if env is None else env
    config_path = config_path or env.get('JQL_ENGINE_CONFIG')

    data: Dict[str, Any] = _load_yaml(config_path) if config_path else {}
    es_config = data.get('elasticsearch') or {}
    storage_config = data.get('storage') or {}
    join_config = data.get('join') or {}
    logging_config = data.get('logging') or {}

    settings = Settings()
    settings.es_host = es_config.get('host', settings.es_host)
    settings.es_username = es_config.get('username', settings.es_username)
    settings.es_password = es_config.get('password', settings.es_password)
    settings.es_ca_cert = es_config.get('ca_cert', settings.es_ca_cert)
    settings.request_timeout = int(es_config.get('request_timeout', settings.request_timeout))
    settings.max_retries = int(es_config.get('max_retries', settings.max_retries))

    allowed = data.get('allowed_indexes', [])
    if not isinstance(allowed, list):
        raise ValueError("allowed_indexes must be a list")
    settings.allowed_indexes = [str(index) for index in allowed]

    mapping = data.get('project_index_mapping', {})
    if not isinstance(mapping, dict):
        raise ValueError("project_index_mapping must be a mapping")
    settings.project_index_mapping = {
        str(project).lower(): str(index) for project, index in mapping.items()
    }

    settings.saved_queries_path = storage_config.get('path', settings.saved_queries_path)
    max_pairs = join_config.get('max_pairs_per_key')
    settings.max_pairs_per_key = int(max_pairs) if max_pairs is not None else None
    settings.log_level = logging_config.get('level', settings.log_level)
    settings.log_file = logging_config.get('file', settings.log_file)

    # Environment overrides
    if env.get('ELASTICSEARCH_HOST'):
        settings.es_host = env['ELASTICSEARCH_HOST']
    if env.get('ELASTICSEARCH_USERNAME'):
        settings.es_username = env['ELASTICSEARCH_USERNAME']
    if env.get('ELASTICSEARCH_PASSWORD'):
        settings.es_password = env['ELASTICSEARCH_PASSWORD']
    if env.get('ELASTICSEARCH_CA_CERT'):
        settings.es_ca_cert = env['ELASTICSEARCH_CA_CERT']
    if env.get('ALLOWED_HEALTH_INDEXES'):
        settings.allowed_indexes = _split_list(env['ALLOWED_HEALTH_INDEXES'])
    if env.get('PROJECT_INDEX_MAPPING'):
        settings.project_index_mapping = parse_project_mapping(env['PROJECT_INDEX_MAPPING'])
    if env.get('SAVED_QUERIES_PATH'):
        settings.saved_queries_path = env['SAVED_QUERIES_PATH']
    if env.get('LOG_LEVEL'):
        settings.log_level = env['LOG_LEVEL']

    settings.log_level = str(settings.log_level).upper()
    if settings.log_level not in LOG_LEVELS:
        raise ValueError(f"Invalid log level: {settings.log_level}")

    return settings


def setup_logging(level: str = 'INFO', log_file: Optional[str] = None) -> None:
    """Configure root logging for the process.

    Args:
        level: Log level name
        log_file: Optional file that receives the same records as stdout
    """
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    logger.debug("Logging configured at %s", level.upper())
