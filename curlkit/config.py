import yaml
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Optional, Literal
from pydantic import BaseModel, Field, ValidationError, model_validator


class TransferDefaults(BaseModel):
    """Option values a freshly initialized (or reset) session starts from."""
    method: str = "GET"
    timeout: Optional[float] = Field(default=None, ge=0)
    connect_timeout: Optional[float] = Field(default=300.0, ge=0)
    follow_redirects: bool = False
    max_redirects: int = Field(default=20, ge=0)
    verify_tls: bool = True
    ca_bundle: Optional[str] = None
    user_agent: Optional[str] = "curlkit/0.1"
    return_transfer: bool = True

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy_fields(cls, values):
        # curl-flavoured spellings accepted for hand-written config files
        if isinstance(values, dict):
            values = dict(values)
            maxredirs = values.pop("maxredirs", None)
            if "max_redirects" not in values and maxredirs is not None:
                values["max_redirects"] = maxredirs
            cainfo = values.pop("cainfo", None)
            if "ca_bundle" not in values and cainfo:
                values["ca_bundle"] = cainfo
        return values

    def as_option_values(self) -> Dict[str, Any]:
        return self.model_dump()


class LoggingConfig(BaseModel):
    logs_dir: str = "logs"
    console_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


class EvidenceConfig(BaseModel):
    enabled: bool = False
    logs_dir: str = "logs"


class AppConfig(BaseModel):
    transfer: TransferDefaults = TransferDefaults()
    logging: LoggingConfig = LoggingConfig()
    evidence: EvidenceConfig = EvidenceConfig()


def _load_yaml_mapping(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Error parsing YAML config: {exc}")

    if not isinstance(data, dict):
        raise ValueError(f"Configuration file at {path} must contain a mapping at the top level.")
    return data


def _deep_merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """
    Load YAML config, merge it with defaults, validate with Pydantic, and return a typed config object.
    Without a path only the bundled defaults are used.
    """
    default_config = _load_yaml_mapping(get_default_config_path())
    user_config: Dict[str, Any] = {}
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found at: {config_path}")
        user_config = _load_yaml_mapping(path)

    merged_config = _deep_merge_dicts(default_config, user_config)

    try:
        return AppConfig(**merged_config)
    except ValidationError as e:
        raise ValueError(f"Configuration validation failed: {e}")


def get_default_config_path() -> Path:
    """Returns the absolute path to the default config file shipped inside the package."""
    return Path(__file__).parent / "default.yaml"
