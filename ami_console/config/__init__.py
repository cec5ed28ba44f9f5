"""
Configuration for the AMI operator console.

Pydantic v2 models, loaded once at process start and frozen thereafter.

This package contains:
- loaders: YAML file loading and parsing
- security: credential injection (environment only)
- defaults: default value application with environment overrides
"""

import os
import re
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .defaults import apply_ami_defaults, apply_logging_defaults, apply_supervisor_defaults
from .loaders import DEFAULT_CONFIG_PATH, load_yaml_with_env_expansion, resolve_config_path
from .security import inject_ami_credentials


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class AMIConfig(_Frozen):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=5038)
    username: Optional[str] = None
    secret: Optional[str] = Field(default=None, repr=False)
    connect_timeout: float = Field(default=5.0)
    connect_attempts: int = Field(default=3, ge=1)
    banner_drain_attempts: int = Field(default=5, ge=0)
    banner_timeout: float = Field(default=0.2)
    action_timeout: float = Field(default=5.0)
    logoff_timeout: float = Field(default=1.0)


class SupervisorConfig(_Frozen):
    """Where 'monitor' calls are placed. No endpoint means monitoring is disabled."""
    endpoint: Optional[str] = None           # e.g. PJSIP/9000
    context: str = Field(default="operator-monitor")
    dial_prefix: str = Field(default="")     # Exten = dial_prefix + target channel name
    timeout_ms: int = Field(default=30000, ge=1)
    caller_id: Optional[str] = None


class DirectionRuleConfig(_Frozen):
    field: Literal["channel", "context", "exten", "caller_num", "connected_num", "technology", "peer"]
    match: Literal["equals", "prefix", "regex"] = "equals"
    pattern: str
    direction: Literal["inbound", "outbound", "internal"]


def _default_rules() -> List[DirectionRuleConfig]:
    rules = [
        DirectionRuleConfig(field="context", match="equals", pattern=ctx, direction="inbound")
        for ctx in ("from-external", "from-trunk", "from-pstn", "inbound")
    ]
    rules += [
        DirectionRuleConfig(field="channel", match="prefix", pattern=prefix, direction="outbound")
        for prefix in ("PJSIP/outbound", "PJSIP/mytrunk", "PJSIP/siptrunk")
    ]
    return rules


class ClassificationConfig(_Frozen):
    direction_variable: str = Field(default="OPERATOR_DIRECTION")
    rules: List[DirectionRuleConfig] = Field(default_factory=_default_rules)
    extension_max_digits: int = Field(default=5, ge=1)
    external_min_digits: int = Field(default=7, ge=1)


class ConsoleConfig(_Frozen):
    inbox_capacity: int = Field(default=20000, ge=1)
    tick_seconds: float = Field(default=0.5, gt=0)
    audit_size: int = Field(default=500, ge=1)
    tombstone_size: int = Field(default=4096, ge=0)


class HealthConfig(_Frozen):
    enabled: bool = Field(default=False)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=15038)


class LoggingConfig(_Frozen):
    level: str = Field(default="info")  # debug|info|warning|error|critical
    to_file: bool = Field(default=True)
    file_path: str = Field(default="logs/")


class AppConfig(_Frozen):
    ami: AMIConfig = Field(default_factory=AMIConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    classification: ClassificationConfig = Field(default_factory=ClassificationConfig)
    console: ConsoleConfig = Field(default_factory=ConsoleConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def with_ami_overrides(self, **overrides: Any) -> "AppConfig":
        """Return a copy with non-None AMI fields replaced (command-line arguments)."""
        update = {k: v for k, v in overrides.items() if v is not None}
        if not update:
            return self
        ami = AMIConfig(**{**self.ami.model_dump(), **update})
        return self.model_copy(update={"ami": ami})


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load and validate configuration.

    Phase 1: YAML with ${VAR} expansion (optional when no explicit path is given)
    Phase 2: credentials from the environment only
    Phase 3: defaults with environment overrides
    Phase 4: validate into frozen models

    Raises:
        FileNotFoundError: If an explicitly requested configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails
        pydantic.ValidationError: If values have the wrong shape
    """
    if path is None:
        resolved = resolve_config_path(DEFAULT_CONFIG_PATH)
        config_data: Dict[str, Any] = load_yaml_with_env_expansion(resolved) if os.path.exists(resolved) else {}
    else:
        config_data = load_yaml_with_env_expansion(resolve_config_path(path))

    inject_ami_credentials(config_data)

    apply_ami_defaults(config_data)
    apply_supervisor_defaults(config_data)
    apply_logging_defaults(config_data)

    return AppConfig(**config_data)


def validate_config(config: AppConfig) -> Tuple[List[str], List[str]]:
    """
    Validate configuration before connecting.

    Returns:
        (errors, warnings): errors block startup, warnings are logged.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if not (0 < config.ami.port < 65536):
        errors.append(f"AMI port {config.ami.port} out of valid range (1-65535)")
    if not config.ami.username:
        errors.append("AMI username not configured (AMI_USERNAME or command line)")
    if not config.ami.secret:
        errors.append("AMI secret not configured (AMI_SECRET or command line)")

    for rule in config.classification.rules:
        if rule.match == "regex":
            try:
                re.compile(rule.pattern)
            except re.error as e:
                errors.append(f"Invalid classification regex {rule.pattern!r}: {e}")

    if not config.supervisor.endpoint:
        warnings.append("No supervisor endpoint configured; monitor actions are disabled")
    if config.health.enabled and config.health.host == "0.0.0.0":
        warnings.append("Health endpoint bound to 0.0.0.0; /snapshot exposes live call metadata")
    if config.classification.extension_max_digits >= config.classification.external_min_digits:
        warnings.append("extension_max_digits >= external_min_digits; number-shape classification is ambiguous")

    return errors, warnings


__all__ = [
    'AMIConfig',
    'SupervisorConfig',
    'DirectionRuleConfig',
    'ClassificationConfig',
    'ConsoleConfig',
    'HealthConfig',
    'LoggingConfig',
    'AppConfig',
    'load_config',
    'validate_config',
]
