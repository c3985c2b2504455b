"""
Configuration module for the IPV experiment tracker.

Loads experiment YAML files into immutable configuration objects. Environment
variables are expanded once, here, at load time; nothing below this module reads
the environment.
"""

import os
import re
import yaml
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from .errors import ConfigError
from .parsing.response_parser import ParserOptions

DEFAULT_DATABASE_URL = "sqlite:///experiments.db"
TEXT_PLACEHOLDER = "<<TEXT>>"

_BRACED_VAR = re.compile(r"\$\{([^}]+)\}")
_BARE_VAR = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")


@dataclass(frozen=True)
class ModelConfig:
    name: str
    temperature: float
    provider: Optional[str] = None
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class PromptConfig:
    system_prompt: str
    user_template: str
    version: str
    author: Optional[str] = None


@dataclass(frozen=True)
class DataConfig:
    file: Optional[str] = None


@dataclass(frozen=True)
class RunConfig:
    seed: Optional[int] = None
    max_narratives: Optional[int] = None
    workers: int = 1
    chunk_size: int = 100
    save_results: bool = False
    output_dir: str = "benchmark_results"
    log_dir: str = "logs/experiments"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff for transient LLM failures."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


@dataclass(frozen=True)
class StorageConfig:
    database_url: str = DEFAULT_DATABASE_URL


@dataclass(frozen=True)
class ExperimentConfig:
    """Complete, validated configuration for one experiment run."""
    name: str
    model: ModelConfig
    prompt: PromptConfig
    data: DataConfig = field(default_factory=DataConfig)
    run: RunConfig = field(default_factory=RunConfig)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    parser: ParserOptions = field(default_factory=ParserOptions)
    storage: StorageConfig = field(default_factory=StorageConfig)
    author: Optional[str] = None
    config_path: Optional[str] = None

    def snapshot(self) -> Dict[str, Any]:
        """Plain-dict view persisted with the experiment for reproducibility."""
        snap = asdict(self)
        # never persist credentials
        snap["model"].pop("api_key", None)
        return snap


def expand_env_vars(value: Any) -> Any:
    """Recursively expand ``${VAR}`` and ``$VAR`` in string values."""
    if isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(v) for v in value]
    if isinstance(value, str):
        value = _BRACED_VAR.sub(lambda m: os.environ.get(m.group(1), ""), value)
        return _BARE_VAR.sub(lambda m: os.environ.get(m.group(1), ""), value)
    return value


def get_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a raw configuration mapping from a YAML file.

    Args:
        config_path: Path to the YAML file

    Returns:
        Configuration dictionary with environment variables expanded
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        try:
            config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if config is not None and not isinstance(config, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")

    return expand_env_vars(config or {})


def get_database_url(override: Optional[str] = None,
                     config: Optional[Dict[str, Any]] = None) -> str:
    """
    Resolve the database URL with sensible fallbacks:
      1) explicit override (argument)
      2) ``storage.database_url`` in the config mapping
      3) env: DATABASE_URL
      4) SQLite file ``experiments.db`` in the working directory
    """
    from_config = ((config or {}).get("storage") or {}).get("database_url")
    return override or from_config or os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL


def _read_prompt(section: Dict[str, Any], key: str, base_dir: Path) -> Optional[str]:
    inline = section.get(key)
    if inline:
        return inline
    file_ref = section.get(f"{key}_file")
    if not file_ref:
        return None
    path = Path(file_ref)
    if not path.is_absolute():
        path = base_dir / path
    if not path.exists():
        raise ConfigError(f"prompt.{key}_file not found: {path}")
    return path.read_text(encoding="utf-8")


def _number(section: Dict[str, Any], section_name: str, key: str, default: Any = None,
            cast: Callable[[Any], Any] = int) -> Any:
    """Read a numeric setting, raising ConfigError instead of ValueError/TypeError."""
    value = section.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"{section_name}.{key} must be numeric, got: {value!r}")
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{section_name}.{key} must be numeric, got: {value!r}") from None


def _optional_section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Config section {name} must be a mapping")
    return section


def validate_config(raw: Dict[str, Any]) -> None:
    """
    Check required fields and parameter ranges of a raw configuration mapping.

    Raises:
        ConfigError: On the first problem found
    """
    for section in ("experiment", "model", "prompt"):
        if not isinstance(raw.get(section), dict):
            raise ConfigError(f"Missing required config section: {section}")

    if not raw["experiment"].get("name"):
        raise ConfigError("experiment.name is required")

    model = raw["model"]
    if not model.get("name"):
        raise ConfigError("model.name is required")
    temperature = model.get("temperature")
    if temperature is None:
        raise ConfigError("model.temperature is required")
    if isinstance(temperature, bool) or not isinstance(temperature, (int, float)) or not 0 <= temperature <= 2:
        raise ConfigError(f"model.temperature must be numeric between 0.0 and 2.0, got: {temperature!r}")
    timeout = model.get("timeout_seconds", 30)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigError(f"model.timeout_seconds must be positive, got: {timeout!r}")

    prompt = raw["prompt"]
    if not prompt.get("version"):
        raise ConfigError("prompt.version is required")
    if not (prompt.get("system_prompt") or prompt.get("system_prompt_file")):
        raise ConfigError("Either prompt.system_prompt or prompt.system_prompt_file is required")
    if not (prompt.get("user_template") or prompt.get("user_template_file")):
        raise ConfigError("Either prompt.user_template or prompt.user_template_file is required")

    run = _optional_section(raw, "run")
    if _number(run, "run", "workers", 1) < 1:
        raise ConfigError("run.workers must be at least 1")
    if _number(run, "run", "chunk_size", 100) < 1:
        raise ConfigError("run.chunk_size must be at least 1")
    max_narratives = _number(run, "run", "max_narratives")
    if max_narratives is not None and max_narratives < 0:
        raise ConfigError("run.max_narratives must not be negative")

    retry = _optional_section(raw, "retry")
    if _number(retry, "retry", "max_attempts", 3) < 1:
        raise ConfigError("retry.max_attempts must be at least 1")
    if _number(retry, "retry", "base_delay", 1.0, float) < 0:
        raise ConfigError("retry.base_delay must not be negative")
    if _number(retry, "retry", "max_delay", 30.0, float) < 0:
        raise ConfigError("retry.max_delay must not be negative")

    parser = _optional_section(raw, "parser")
    max_rationale = _number(parser, "parser", "max_rationale_length")
    if max_rationale is not None and max_rationale < 1:
        raise ConfigError("parser.max_rationale_length must be at least 1")
    _optional_section(raw, "data")


def build_experiment_config(raw: Dict[str, Any],
                            base_dir: Optional[Path] = None,
                            database_url: Optional[str] = None,
                            config_path: Optional[str] = None) -> ExperimentConfig:
    """Validate a raw mapping and freeze it into an :class:`ExperimentConfig`."""
    validate_config(raw)
    base_dir = base_dir or Path.cwd()

    exp = raw["experiment"]
    model = raw["model"]
    prompt = raw["prompt"]
    data = raw.get("data") or {}
    run = raw.get("run") or {}
    retry = raw.get("retry") or {}
    parser = raw.get("parser") or {}

    system_prompt = _read_prompt(prompt, "system_prompt", base_dir)
    user_template = _read_prompt(prompt, "user_template", base_dir)

    return ExperimentConfig(
        name=str(exp["name"]),
        author=exp.get("author"),
        model=ModelConfig(
            name=str(model["name"]),
            temperature=float(model["temperature"]),
            provider=model.get("provider"),
            api_url=model.get("api_url"),
            api_key=model.get("api_key"),
            timeout_seconds=float(model.get("timeout_seconds", 30)),
        ),
        prompt=PromptConfig(
            system_prompt=system_prompt,
            user_template=user_template,
            version=str(prompt["version"]),
            author=prompt.get("author") or exp.get("author"),
        ),
        data=DataConfig(file=data.get("file")),
        run=RunConfig(
            seed=run.get("seed"),
            max_narratives=_number(run, "run", "max_narratives"),
            workers=_number(run, "run", "workers", 1),
            chunk_size=_number(run, "run", "chunk_size", 100),
            save_results=bool(run.get("save_results", run.get("save_csv_json", False))),
            output_dir=run.get("output_dir", "benchmark_results"),
            log_dir=run.get("log_dir", "logs/experiments"),
        ),
        retry=RetryPolicy(
            max_attempts=_number(retry, "retry", "max_attempts", 3),
            base_delay=_number(retry, "retry", "base_delay", 1.0, float),
            max_delay=_number(retry, "retry", "max_delay", 30.0, float),
        ),
        parser=ParserOptions(
            max_rationale_length=_number(parser, "parser", "max_rationale_length"),
        ),
        storage=StorageConfig(database_url=get_database_url(database_url, raw)),
        config_path=config_path,
    )


def load_experiment_config(config_path: Union[str, Path],
                           database_url: Optional[str] = None) -> ExperimentConfig:
    """
    Load, validate and freeze an experiment configuration file.

    Args:
        config_path: Path to the experiment YAML file
        database_url: Optional override for the storage URL

    Returns:
        ExperimentConfig ready to be passed to the orchestrator
    """
    path = Path(config_path)
    raw = get_config(path)
    return build_experiment_config(
        raw,
        base_dir=path.parent,
        database_url=database_url,
        config_path=str(path),
    )
