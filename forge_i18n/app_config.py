"""Configuration loading for the extraction tool."""
import copy
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import jsonschema
import yaml
from dotenv import load_dotenv
from openai import AsyncOpenAI

from forge_i18n.errors import ConfigError
from forge_i18n.logging_config import setup_logger
from forge_i18n.syntax_tree import LookupStyle

CONFIG_FILE_ENV = 'FORGE_I18N_CONFIG_FILE'
API_KEY_ENVS = ('FORGE_I18N_API_KEY', 'DEEPSEEK_API_KEY', 'OPENAI_API_KEY')
DEFAULT_CONFIG_FILES = ('forge-i18n.config.yaml', 'forge-i18n.config.yml', 'forge-i18n.config.json')

VALID_STRATEGIES = ('semantic', 'hash', 'ai')
_LOCALE_CODE_RE = re.compile(r'^[a-z]{2}[_-][A-Z]{2}$')

DEFAULT_CONFIG: Dict[str, Any] = {
    'input': ['src/**/*.{ts,tsx,js,jsx}'],
    'ignore': [
        '**/node_modules/**',
        '**/locales/**',
        '**/*.d.ts',
        '**/*.test.{ts,tsx,js,jsx}',
        '**/*.spec.{ts,tsx,js,jsx}',
        '**/dist/**',
    ],
    'skip_function_calls': ['console', 'require', 'import'],
    'locales_dir': 'locales',
    'namespace': 'translation',
    'languages': {
        'source': 'zh_CN',
        'targets': ['zh_CN', 'en_US'],
    },
    'key_generation': {
        'strategy': 'semantic',
        'hash_length': 4,
        'max_semantic_length': 6,
        'use_type_prefix': True,
        'ai': {
            'enabled': False,
            'batch_size': 10,
            'fallback_to_semantic': True,
            'max_prompt_tokens': 3000,
            'cache': {
                'file_path': '.forge-cache/i18n-ai-cache.json',
                'ttl_days': 30,
                'enabled': True,
            },
        },
    },
    'ai_provider': {
        'api_url': 'https://api.deepseek.com',
        'model': 'deepseek-chat',
        'temperature': 0.3,
        'max_tokens': 2000,
        'requests_per_minute': 20,
        'max_retries': 3,
    },
    'lookup': {
        'object': 'intl',
        'methods': ['get', 'getHTML'],
        'module': 'react-intl-universal',
    },
    'reporting': {
        'top_level_warnings_path': 'docs/i18n-top-level-warnings.md',
    },
    'post_commands': [],
    'logging': {
        'log_level': 'INFO',
        'log_file_path': None,
        'log_to_console': True,
    },
    'dry_run': False,
}

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

CONFIG_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "input": {**_STRING_LIST, "minItems": 1},
        "ignore": _STRING_LIST,
        "skip_function_calls": _STRING_LIST,
        "locales_dir": {"type": "string", "minLength": 1},
        "namespace": {"type": "string", "minLength": 1},
        "languages": {
            "type": "object",
            "properties": {
                "source": {"type": "string"},
                "targets": {**_STRING_LIST, "minItems": 1},
            },
            "required": ["source", "targets"],
        },
        "key_generation": {
            "type": "object",
            "properties": {
                "strategy": {"enum": list(VALID_STRATEGIES)},
                "hash_length": {"type": "integer"},
                "max_semantic_length": {"type": "integer"},
                "use_type_prefix": {"type": "boolean"},
                "ai": {
                    "type": "object",
                    "properties": {
                        "enabled": {"type": "boolean"},
                        "batch_size": {"type": "integer"},
                        "fallback_to_semantic": {"type": "boolean"},
                        "max_prompt_tokens": {"type": "integer", "minimum": 200},
                        "cache": {
                            "type": "object",
                            "properties": {
                                "file_path": {"type": "string"},
                                "ttl_days": {"type": "number", "minimum": 0},
                                "enabled": {"type": "boolean"},
                            },
                        },
                    },
                },
            },
        },
        "ai_provider": {
            "type": "object",
            "properties": {
                "api_url": {"type": "string"},
                "model": {"type": "string"},
                "temperature": {"type": "number", "minimum": 0, "maximum": 2},
                "max_tokens": {"type": "integer", "minimum": 1},
                "requests_per_minute": {"type": "number", "exclusiveMinimum": 0},
                "max_retries": {"type": "integer", "minimum": 1},
            },
        },
        "lookup": {
            "type": "object",
            "properties": {
                "object": {"type": "string", "pattern": "^[A-Za-z_$][A-Za-z0-9_$]*$"},
                "methods": {**_STRING_LIST, "minItems": 1},
                "module": {"type": "string"},
            },
        },
        "reporting": {
            "type": "object",
            "properties": {"top_level_warnings_path": {"type": "string"}},
        },
        "post_commands": _STRING_LIST,
        "logging": {
            "type": "object",
            "properties": {
                "log_level": {"type": "string"},
                "log_file_path": {"type": ["string", "null"]},
                "log_to_console": {"type": "boolean"},
            },
        },
        "dry_run": {"type": "boolean"},
    },
}


@dataclass
class AppConfig:
    """Resolved configuration of one extraction run; paths are absolute."""
    # Core paths
    project_root: str
    input_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_CONFIG['input']))
    ignore_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_CONFIG['ignore']))
    locales_dir: str = 'locales'
    namespace: str = 'translation'
    top_level_warnings_path: str = 'docs/i18n-top-level-warnings.md'

    # Languages
    source_language: str = 'zh_CN'
    target_languages: List[str] = field(default_factory=lambda: ['zh_CN', 'en_US'])

    # Rewrite settings
    skip_function_calls: List[str] = field(default_factory=lambda: ['console', 'require', 'import'])
    lookup: LookupStyle = field(default_factory=LookupStyle)
    dry_run: bool = False
    post_commands: List[str] = field(default_factory=list)

    # Key generation
    key_strategy: str = 'semantic'
    hash_length: int = 4
    max_semantic_length: int = 6
    use_type_prefix: bool = True
    ai_enabled: bool = False
    ai_batch_size: int = 10
    ai_fallback_to_semantic: bool = True
    ai_max_prompt_tokens: int = 3000
    ai_cache_enabled: bool = True
    ai_cache_file_path: str = '.forge-cache/i18n-ai-cache.json'
    ai_cache_ttl_days: float = 30

    # AI provider
    api_base_url: str = 'https://api.deepseek.com'
    model_name: str = 'deepseek-chat'
    temperature: float = 0.3
    max_tokens: int = 2000
    requests_per_minute: float = 20
    max_retries: int = 3

    # OpenAI-compatible client, only created when AI naming is in use
    openai_client: Optional[AsyncOpenAI] = None

    def __post_init__(self):
        # Relative locations are taken from the project root, not the working directory.
        for name in ('locales_dir', 'top_level_warnings_path', 'ai_cache_file_path'):
            value = getattr(self, name)
            if value and not os.path.isabs(value):
                setattr(self, name, os.path.join(self.project_root, value))

    @property
    def use_ai(self) -> bool:
        return self.key_strategy == 'ai' and self.ai_enabled

    def locale_dir(self, locale: str) -> str:
        return os.path.join(self.locales_dir, to_locale_dir_name(locale))

    def output_path(self, locale: str) -> str:
        return os.path.join(self.locale_dir(locale), f"{self.namespace}.json")

    def detail_path(self, locale: str) -> str:
        return os.path.join(self.locale_dir(locale), f"{self.namespace}.detail.json")

    def report_path(self, locale: str) -> str:
        return os.path.join(self.locale_dir(locale), f"{self.namespace}.report.json")


def to_locale_dir_name(locale: str) -> str:
    """Locale folders use the dashed form: ``zh_CN`` is stored under ``zh-CN``."""
    return locale.strip().replace('_', '-')


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``override`` into a copy of ``base``; nested dicts merge, everything else replaces."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _load_dotenv_files(project_root: str) -> Optional[str]:
    """Load ``.env`` from the project root; returns the path loaded, if any."""
    dotenv_path = os.path.join(project_root, '.env')
    if os.path.exists(dotenv_path):
        load_dotenv(dotenv_path)
        return dotenv_path
    return None


def resolve_config_path(project_root: str, explicit_path: Optional[str] = None) -> Optional[str]:
    """
    Find the configuration file to use.

    An explicit path wins, then the ``FORGE_I18N_CONFIG_FILE`` environment
    variable, then the default file names in the project root.

    Raises:
        ConfigError: If an explicitly requested file does not exist.
    """
    requested = explicit_path or os.environ.get(CONFIG_FILE_ENV)
    if requested:
        if not os.path.isabs(requested):
            requested = os.path.abspath(os.path.join(project_root, requested))
        if not os.path.exists(requested):
            raise ConfigError(f"Configuration file '{requested}' not found.")
        return requested

    for name in DEFAULT_CONFIG_FILES:
        candidate = os.path.join(project_root, name)
        if os.path.exists(candidate):
            return candidate
    return None


def _load_yaml_config(config_file: Optional[str]) -> Dict[str, Any]:
    """Read a YAML (or JSON) configuration file; a missing file means defaults."""
    if config_file is None:
        print("Warning: No forge-i18n configuration file found. Using default configuration.", file=sys.stderr)
        print(f"Tip: Create forge-i18n.config.yaml in the project root or set {CONFIG_FILE_ENV}.",
              file=sys.stderr)
        return {}

    if not os.access(config_file, os.R_OK):
        raise ConfigError(f"Configuration file '{config_file}' exists but is not readable.")

    try:
        with open(config_file, 'r', encoding='utf-8') as config_file_stream:
            loaded_config = yaml.safe_load(config_file_stream)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in configuration file '{config_file}': {e}") from e
    except OSError as e:
        raise ConfigError(f"Could not read configuration file '{config_file}': {e}") from e

    if loaded_config is None:
        print(f"Warning: Configuration file '{config_file}' is empty. Using default configuration.",
              file=sys.stderr)
        return {}
    if not isinstance(loaded_config, dict):
        raise ConfigError(f"Configuration file '{config_file}' must contain a mapping.")
    return loaded_config


def validate_config(config: Dict[str, Any], api_key: Optional[str]) -> None:
    """
    Check a merged configuration dictionary.

    Raises:
        ConfigError: On the first problem found.
    """
    try:
        jsonschema.validate(instance=config, schema=CONFIG_SCHEMA)
    except jsonschema.ValidationError as e:
        location = '.'.join(str(part) for part in e.absolute_path) or '<root>'
        raise ConfigError(f"Invalid configuration at '{location}': {e.message}") from e

    languages = config['languages']
    if languages['source'] not in languages['targets']:
        raise ConfigError(f"Source language {languages['source']} must be listed in languages.targets")
    invalid_codes = [code for code in languages['targets'] if not _LOCALE_CODE_RE.match(code)]
    if invalid_codes:
        raise ConfigError(f"Invalid locale code(s): {', '.join(invalid_codes)}; use zh_CN or zh-CN style codes")

    key_generation = config['key_generation']
    if not 4 <= key_generation['hash_length'] <= 8:
        raise ConfigError("key_generation.hash_length must be between 4 and 8")
    if not 4 <= key_generation['max_semantic_length'] <= 12:
        raise ConfigError("key_generation.max_semantic_length must be between 4 and 12")

    ai = key_generation['ai']
    if key_generation['strategy'] == 'ai' and ai['enabled']:
        if not 1 <= ai['batch_size'] <= 50:
            raise ConfigError("key_generation.ai.batch_size must be between 1 and 50")
        if not api_key:
            raise ConfigError(f"AI key naming is enabled but none of {', '.join(API_KEY_ENVS)} is set")


def _find_api_key() -> Optional[str]:
    for name in API_KEY_ENVS:
        value = os.environ.get(name)
        if value:
            return value
    return None


def _api_base_url(api_url: str) -> str:
    # Older configs carry the full endpoint; the client wants the base URL.
    suffix = '/chat/completions'
    url = api_url.rstrip('/')
    return url[:-len(suffix)] if url.endswith(suffix) else url


def _create_openai_client(api_key: str, base_url: str, logger: logging.Logger) -> AsyncOpenAI:
    try:
        client = AsyncOpenAI(api_key=api_key, base_url=base_url)
    except Exception as e:
        raise ConfigError(f"Failed to initialize the AI client: {e}") from e
    logger.info("AI client initialized for %s", base_url)
    return client


def _setup_logger_from_config(config: Dict[str, Any], project_root: str,
                              log_level_override: Optional[str]) -> logging.Logger:
    log_config = config['logging']
    log_level_str = (log_level_override or log_config.get('log_level') or 'INFO').upper()
    log_file_path = log_config.get('log_file_path')
    if log_file_path and not os.path.isabs(log_file_path):
        log_file_path = os.path.join(project_root, log_file_path)
    return setup_logger(log_level_str, log_file_path, log_config.get('log_to_console', True))


def build_app_config(config: Dict[str, Any], project_root: str,
                     openai_client: Optional[AsyncOpenAI] = None) -> AppConfig:
    """Turn a merged, validated configuration dictionary into an AppConfig."""
    key_generation = config['key_generation']
    ai = key_generation['ai']
    cache = ai['cache']
    provider = config['ai_provider']
    lookup = config['lookup']

    return AppConfig(
        project_root=project_root,
        input_patterns=list(config['input']),
        ignore_patterns=list(config['ignore']),
        locales_dir=config['locales_dir'],
        namespace=config['namespace'],
        top_level_warnings_path=config['reporting']['top_level_warnings_path'],
        source_language=config['languages']['source'],
        target_languages=list(config['languages']['targets']),
        skip_function_calls=list(config['skip_function_calls']),
        lookup=LookupStyle(object_name=lookup['object'], methods=tuple(lookup['methods']), module=lookup['module']),
        dry_run=config['dry_run'],
        post_commands=list(config['post_commands']),
        key_strategy=key_generation['strategy'],
        hash_length=key_generation['hash_length'],
        max_semantic_length=key_generation['max_semantic_length'],
        use_type_prefix=key_generation['use_type_prefix'],
        ai_enabled=ai['enabled'],
        ai_batch_size=ai['batch_size'],
        ai_fallback_to_semantic=ai['fallback_to_semantic'],
        ai_max_prompt_tokens=ai['max_prompt_tokens'],
        ai_cache_enabled=cache['enabled'],
        ai_cache_file_path=cache['file_path'],
        ai_cache_ttl_days=cache['ttl_days'],
        api_base_url=_api_base_url(provider['api_url']),
        model_name=provider['model'],
        temperature=provider['temperature'],
        max_tokens=provider['max_tokens'],
        requests_per_minute=provider['requests_per_minute'],
        max_retries=provider['max_retries'],
        openai_client=openai_client,
    )


def load_app_config(config_path: Optional[str] = None, project_root: Optional[str] = None,
                    overrides: Optional[Dict[str, Any]] = None,
                    log_level: Optional[str] = None) -> AppConfig:
    """
    Load configuration from the config file and environment variables.

    Args:
        config_path: Explicit configuration file (``--config``).
        project_root: Root of the project being processed; defaults to the
            current working directory.
        overrides: Values merged over the file contents (CLI flags).
        log_level: Overrides ``logging.log_level``.

    Returns:
        AppConfig: The loaded application configuration.

    Raises:
        ConfigError: If the file cannot be read or the result is invalid.
    """
    project_root = os.path.abspath(project_root or os.getcwd())
    dotenv_path = _load_dotenv_files(project_root)

    config_file = resolve_config_path(project_root, config_path)
    file_config = _load_yaml_config(config_file)
    config = deep_merge(DEFAULT_CONFIG, file_config)
    if overrides:
        config = deep_merge(config, overrides)

    api_key = _find_api_key()
    validate_config(config, api_key)

    logger = _setup_logger_from_config(config, project_root, log_level)
    if config_file:
        logger.info("Loaded configuration from: %s", config_file)
    if dotenv_path:
        logger.info("Loaded environment variables from: %s", dotenv_path)
    else:
        logger.debug("No .env file found in '%s'. Relying on system environment variables.", project_root)

    openai_client = None
    key_generation = config['key_generation']
    if key_generation['strategy'] == 'ai' and key_generation['ai']['enabled']:
        openai_client = _create_openai_client(api_key, _api_base_url(config['ai_provider']['api_url']), logger)

    return build_app_config(config, project_root, openai_client)
