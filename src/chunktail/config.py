from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
import yaml

from .errors import ConfigurationError
from .filters import DEFAULT_EXCLUDE, DEFAULT_INCLUDE, compile_pattern
from .reader import DEFAULT_CHUNK_SIZE, MiB, check_decode_policy
from .watcher import DEFAULT_POLL_INTERVAL

DEFAULT_MAX_INITIAL_BYTES = 20 * MiB

PatternList = Optional[List[str]]


@dataclass
class FilterRule:
    include: PatternList = field(default_factory=lambda: list(DEFAULT_INCLUDE))
    exclude: PatternList = field(default_factory=lambda: list(DEFAULT_EXCLUDE))


@dataclass
class IngestOptions:
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_initial_bytes: int = DEFAULT_MAX_INITIAL_BYTES
    poll_interval: float = DEFAULT_POLL_INTERVAL
    decode_errors: str = "replace"

    def __post_init__(self) -> None:
        if not self.chunk_size:
            self.chunk_size = DEFAULT_CHUNK_SIZE
        if self.max_initial_bytes is None:
            self.max_initial_bytes = DEFAULT_MAX_INITIAL_BYTES
        validate_options(self)


@dataclass
class Config:
    version: int = 1
    options: IngestOptions = field(default_factory=IngestOptions)
    rule: FilterRule = field(default_factory=FilterRule)


def validate_options(options: IngestOptions) -> None:
    if options.chunk_size < 0:
        raise ConfigurationError(f"chunk_size must be a positive byte count, got {options.chunk_size}")
    if options.max_initial_bytes < 0:
        raise ConfigurationError(f"max_initial_bytes must not be negative, got {options.max_initial_bytes}")
    if options.poll_interval is None or options.poll_interval <= 0:
        raise ConfigurationError(f"poll_interval must be positive, got {options.poll_interval}")
    check_decode_policy(options.decode_errors)


def _pattern_list(value: Any, key: str) -> PatternList:
    if value is None:
        return None
    if isinstance(value, str):
        patterns = [value]
    elif isinstance(value, list) and all(isinstance(v, str) for v in value):
        patterns = list(value)
    else:
        raise ConfigurationError(f"'filter.{key}' must be a regex string or a list of regex strings")
    # fail at load time rather than on the first line
    compile_pattern(patterns, name=f"filter.{key}")
    return patterns


def _number(data: Dict[str, Any], key: str, default: Union[int, float], kind: type) -> Union[int, float]:
    value = data.get(key, default)
    if value is None:
        return default
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"'{key}' must be a number, got {value!r}")


def parse_config(data: Dict[str, Any]) -> Config:
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a mapping at the top level")

    options = IngestOptions(
        chunk_size=_number(data, "chunk_size", DEFAULT_CHUNK_SIZE, int),
        max_initial_bytes=_number(data, "max_initial_bytes", DEFAULT_MAX_INITIAL_BYTES, int),
        poll_interval=_number(data, "poll_interval", DEFAULT_POLL_INTERVAL, float),
        decode_errors=str(data.get("decode_errors", "replace") or "replace"),
    )

    raw_filter = data.get("filter", {})
    if raw_filter is None:
        raw_filter = {}
    if not isinstance(raw_filter, dict):
        raise ConfigurationError("'filter' must be a mapping with 'include' and/or 'exclude'")
    rule = FilterRule()
    if "include" in raw_filter:
        rule.include = _pattern_list(raw_filter["include"], "include")
    if "exclude" in raw_filter:
        rule.exclude = _pattern_list(raw_filter["exclude"], "exclude")

    return Config(version=int(data.get("version", 1)), options=options, rule=rule)


def load_config(path: Optional[str] = None) -> Config:
    """Load a YAML config; without a path the built-in defaults are used."""
    if path is None:
        return Config()
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise FileNotFoundError(
            f"Configuration file not found: {path}\n"
            f"Please ensure the file exists or specify a different config with --config"
        )
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file {path}: {e}")

    return parse_config(data)
