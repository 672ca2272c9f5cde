"""
Configuration management and loading.

Handles plan limits, processing, cache, progress and logging settings.
"""

import copy
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional, Tuple

import yaml

# Daily limit sentinel meaning "no limit"
UNLIMITED = -1


class LockBackend(Enum):
    """Where in-flight processing jobs are registered."""
    MEMORY = "memory"
    SQLITE = "sqlite"


class LogFormat(Enum):
    TEXT = "text"
    JSON = "json"


@dataclass(frozen=True)
class DatabaseConfig:
    path: str = "ingest_guard.db"


@dataclass(frozen=True)
class QuotaConfig:
    """Plan resolution settings.

    Quota days are UTC calendar days; the date string is part of
    every usage counter key.
    """
    default_plan: str = "free"
    premium_plans: Tuple[str, ...] = ("premium", "enterprise")


@dataclass(frozen=True)
class ProcessingConfig:
    """Limits for the extraction/analysis pipeline."""
    timeout_seconds: float = 300.0
    lock_backend: LockBackend = LockBackend.MEMORY
    lock_stale_after_seconds: float = 900.0
    max_file_size_mb: float = 50.0

    def __post_init__(self):
        """Validate processing values are positive."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.lock_stale_after_seconds <= self.timeout_seconds:
            raise ValueError("lock_stale_after_seconds must be > timeout_seconds")
        if self.max_file_size_mb <= 0:
            raise ValueError("max_file_size_mb must be > 0")


@dataclass(frozen=True)
class CacheConfig:
    ttl_seconds: Optional[float] = None

    def __post_init__(self):
        if self.ttl_seconds is not None and self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0 or null")


@dataclass(frozen=True)
class ProgressConfig:
    """Synthetic progress interpolation settings."""
    headroom: float = 0.5
    step: float = 0.01
    interval_seconds: float = 5.0
    max_synthetic: float = 0.95

    def __post_init__(self):
        """Validate interpolation parameters."""
        if not 0 < self.headroom <= 1:
            raise ValueError("headroom must be in (0, 1]")
        if not 0 < self.step < 1:
            raise ValueError("step must be in (0, 1)")
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if not 0 < self.max_synthetic < 1:
            raise ValueError("max_synthetic must be in (0, 1)")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: LogFormat = LogFormat.TEXT


@dataclass(frozen=True)
class IngestConfig:
    """Complete engine configuration."""
    plans: Dict[str, Dict[str, int]]
    database: DatabaseConfig = DatabaseConfig()
    quota: QuotaConfig = QuotaConfig()
    processing: ProcessingConfig = ProcessingConfig()
    cache: CacheConfig = CacheConfig()
    progress: ProgressConfig = ProgressConfig()
    logging: LoggingConfig = LoggingConfig()

    def __post_init__(self):
        if self.quota.default_plan not in self.plans:
            raise ValueError(f"default_plan '{self.quota.default_plan}' is not a configured plan")

    @property
    def features(self) -> FrozenSet[str]:
        """Every feature named by any plan."""
        names = set()
        for limits in self.plans.values():
            names.update(limits)
        return frozenset(names)

    def get_limit(self, plan_type: str, feature: str) -> int:
        """Daily limit for a feature on a plan.

        Unknown plans fall back to the default plan. A feature missing from
        a plan is not available on it (limit 0).
        """
        limits = self.plans.get(plan_type)
        if limits is None:
            limits = self.plans[self.quota.default_plan]
        return limits.get(feature, 0)

    def is_premium(self, plan_type: str) -> bool:
        return plan_type in self.quota.premium_plans


# Limits from the mobile app's permission table
DEFAULT_CONFIG: Dict[str, Any] = {
    "plans": {
        "free": {
            "pdf_processing": 2,
            "youtube_processing": 2,
            "audio_transcription": 3,
            "flashcard_generation": 3,
            "quiz_generation": 3,
            "ai_tutor_questions": 10,
            "mind_map_generation": 2,
            "full_audio_summary": 0,
        },
        "premium": {
            "pdf_processing": UNLIMITED,
            "youtube_processing": UNLIMITED,
            "audio_transcription": UNLIMITED,
            "flashcard_generation": UNLIMITED,
            "quiz_generation": UNLIMITED,
            "ai_tutor_questions": UNLIMITED,
            "mind_map_generation": UNLIMITED,
            "full_audio_summary": UNLIMITED,
        },
        "enterprise": {
            "pdf_processing": UNLIMITED,
            "youtube_processing": UNLIMITED,
            "audio_transcription": UNLIMITED,
            "flashcard_generation": UNLIMITED,
            "quiz_generation": UNLIMITED,
            "ai_tutor_questions": UNLIMITED,
            "mind_map_generation": UNLIMITED,
            "full_audio_summary": UNLIMITED,
        },
    },
}


def default_config() -> IngestConfig:
    """Built-in configuration used when no file is given."""
    return parse_config(copy.deepcopy(DEFAULT_CONFIG))


def load_config(path: str) -> IngestConfig:
    """Load and validate engine configuration from a YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys,
    wrong types and out-of-range values are all rejected. Sections that
    are left out take their defaults; a ``plans`` section replaces the
    built-in plans entirely.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated IngestConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    if 'plans' not in raw_config:
        raw_config['plans'] = copy.deepcopy(DEFAULT_CONFIG['plans'])
    return parse_config(raw_config)


def parse_config(raw_config: Dict[str, Any]) -> IngestConfig:
    """Validate a raw configuration mapping and build an IngestConfig."""
    allowed_top_keys = {'database', 'quota', 'plans', 'processing', 'cache', 'progress', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    plans = _parse_plans(raw_config.get('plans'))

    database = _section(raw_config, 'database', {'path'})
    if 'path' in database and not isinstance(database['path'], str):
        raise ValueError("'database.path' must be a string")

    quota = _section(raw_config, 'quota', {'default_plan', 'premium_plans'})
    premium = quota.get('premium_plans', list(QuotaConfig.premium_plans))
    if not isinstance(premium, list) or not all(isinstance(p, str) for p in premium):
        raise ValueError("'quota.premium_plans' must be a list of plan names")

    processing = _section(
        raw_config,
        'processing',
        {'timeout_seconds', 'lock_backend', 'lock_stale_after_seconds', 'max_file_size_mb'},
    )
    backend_str = processing.get('lock_backend', LockBackend.MEMORY.value)
    try:
        backend = LockBackend(str(backend_str).lower())
    except ValueError:
        valid = [b.value for b in LockBackend]
        raise ValueError(f"'processing.lock_backend' must be one of: {valid}")

    cache = _section(raw_config, 'cache', {'ttl_seconds'})
    progress = _section(raw_config, 'progress', {'headroom', 'step', 'interval_seconds', 'max_synthetic'})

    logging_data = _section(raw_config, 'logging', {'level', 'format'})
    format_str = logging_data.get('format', LogFormat.TEXT.value)
    try:
        log_format = LogFormat(str(format_str).lower())
    except ValueError:
        valid = [f.value for f in LogFormat]
        raise ValueError(f"'logging.format' must be one of: {valid}")

    ttl = cache.get('ttl_seconds')
    return IngestConfig(
        plans=plans,
        database=DatabaseConfig(path=database.get('path', DatabaseConfig.path)),
        quota=QuotaConfig(
            default_plan=quota.get('default_plan', QuotaConfig.default_plan),
            premium_plans=tuple(premium),
        ),
        processing=ProcessingConfig(
            timeout_seconds=_number(processing, 'timeout_seconds', ProcessingConfig.timeout_seconds),
            lock_backend=backend,
            lock_stale_after_seconds=_number(
                processing, 'lock_stale_after_seconds', ProcessingConfig.lock_stale_after_seconds
            ),
            max_file_size_mb=_number(processing, 'max_file_size_mb', ProcessingConfig.max_file_size_mb),
        ),
        cache=CacheConfig(ttl_seconds=None if ttl is None else _number(cache, 'ttl_seconds', 0)),
        progress=ProgressConfig(
            headroom=_number(progress, 'headroom', ProgressConfig.headroom),
            step=_number(progress, 'step', ProgressConfig.step),
            interval_seconds=_number(progress, 'interval_seconds', ProgressConfig.interval_seconds),
            max_synthetic=_number(progress, 'max_synthetic', ProgressConfig.max_synthetic),
        ),
        logging=LoggingConfig(
            level=str(logging_data.get('level', LoggingConfig.level)).upper(),
            format=log_format,
        ),
    )


def _section(raw_config: Dict[str, Any], name: str, allowed_keys: set) -> Dict[str, Any]:
    """Return a validated optional section, or an empty dict."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _number(data: Dict[str, Any], key: str, default: float) -> float:
    if key not in data:
        return float(default)
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' must be a number")
    return float(value)


def _parse_plans(data: Any) -> Dict[str, Dict[str, int]]:
    """Parse and validate the plan -> feature -> daily limit table.

    Raises:
        ValueError: If the table is missing, malformed or has a bad limit
    """
    if not data:
        raise ValueError("Missing required 'plans' section")
    if not isinstance(data, dict):
        raise ValueError("'plans' must be a dictionary")

    plans = {}
    for plan_type, limits in data.items():
        if not isinstance(limits, dict):
            raise ValueError(f"Plan '{plan_type}' must be a dictionary")
        parsed = {}
        for feature, limit in limits.items():
            if isinstance(limit, bool) or not isinstance(limit, int):
                raise ValueError(f"Limit for plans.{plan_type}.{feature} must be an integer")
            if limit < UNLIMITED:
                raise ValueError(
                    f"Limit for plans.{plan_type}.{feature} must be >= 0, or {UNLIMITED} for unlimited"
                )
            parsed[str(feature)] = limit
        plans[str(plan_type)] = parsed
    return plans
