"""
Configuration management for gcpublish.

Loads $GCPUBLISH_HOME/config.yaml once at startup into a GcPublishConfig.
Everything a step needs (Azure identifiers, storage target, PowerShell
module requirements, policy generation options) is resolved here so that
steps never probe the environment for optional settings themselves.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from gcpublish.environment import ModuleRequirement
from gcpublish.errors import ConfigError


SUPPORTED_SCHEMA_VERSIONS = (1,)

DEFAULT_MODULES = [
    {"name": "GuestConfiguration", "minimum_version": "4.5.0"},
    {"name": "PSDesiredStateConfiguration", "required_version": "2.0.7"},
    {"name": "PSDscResources", "minimum_version": "2.12.0"},
]


def get_gcpublish_home() -> Path:
    """Return the gcpublish home directory ($GCPUBLISH_HOME or ~/.config/gcpublish)."""
    env_home = os.environ.get("GCPUBLISH_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path("~/.config/gcpublish").expanduser()


def get_config_path() -> Path:
    return get_gcpublish_home() / "config.yaml"


@dataclass
class PolicyOptions:
    """Options applied when generating guest configuration policy definitions."""

    platform: str = "Windows"
    policy_version: str = "1.0.0"
    include_arc_machines: bool = False
    tags: Dict[str, str] = field(default_factory=dict)
    category: str = "Guest Configuration"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PolicyOptions":
        data = data or {}
        unknown = set(data) - {"platform", "policy_version", "include_arc_machines", "tags", "category"}
        if unknown:
            raise ConfigError(f"Unknown policy options: {', '.join(sorted(unknown))}")
        options = cls(**data)
        if options.platform not in ("Windows", "Linux"):
            raise ConfigError(f"policy.platform must be Windows or Linux, got {options.platform!r}")
        return options


@dataclass
class GcPublishConfig:
    """Resolved gcpublish configuration."""

    subscription_id: str
    storage_account: str
    schema_version: int = 1
    tenant_id: Optional[str] = None
    resource_group: Optional[str] = None
    location: str = "eastus"
    container: str = "guestconfiguration"
    output_root: str = "~/gcpublish/out"
    policy_scope: Optional[str] = None
    management_group_id: Optional[str] = None
    use_sas: bool = True
    sas_expiry_hours: int = 168
    powershell_executable: str = "pwsh"
    module_roots: List[str] = field(default_factory=list)
    cache_subdir: str = "gcworker/packages"
    modules: List[ModuleRequirement] = field(default_factory=list)
    policy: PolicyOptions = field(default_factory=PolicyOptions)
    logging: Dict[str, Any] = field(default_factory=dict)
    env_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GcPublishConfig":
        """Build a config from parsed YAML, validating as it goes."""
        data = dict(data)

        schema_version = data.pop("schema_version", 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ConfigError(
                f"Unsupported config schema_version {schema_version}. "
                f"Supported: {', '.join(str(v) for v in SUPPORTED_SCHEMA_VERSIONS)}"
            )

        subscription_id = data.pop("subscription_id", None) or os.environ.get("AZURE_SUBSCRIPTION_ID")
        if not subscription_id:
            raise ConfigError("subscription_id is required (or set AZURE_SUBSCRIPTION_ID)")

        storage_account = data.pop("storage_account", None)
        if not storage_account:
            raise ConfigError("storage_account is required")

        modules = [
            ModuleRequirement(
                name=m["name"],
                required_version=m.get("required_version"),
                minimum_version=m.get("minimum_version"),
            )
            for m in data.pop("modules", None) or DEFAULT_MODULES
        ]
        policy = PolicyOptions.from_dict(data.pop("policy", None))

        known = {f for f in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        config = cls(
            subscription_id=subscription_id,
            storage_account=storage_account,
            schema_version=schema_version,
            modules=modules,
            policy=policy,
            **data,
        )
        if config.sas_expiry_hours <= 0:
            raise ConfigError("sas_expiry_hours must be positive")
        return config

    @property
    def output_path(self) -> Path:
        return Path(self.output_root).expanduser()

    @property
    def scope(self) -> str:
        """Assignment scope; defaults to the subscription."""
        if self.policy_scope:
            return self.policy_scope
        if self.resource_group:
            return f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"
        return f"/subscriptions/{self.subscription_id}"

    def get_module_roots(self) -> List[Path]:
        """PowerShell module roots, falling back to $PSModulePath."""
        if self.module_roots:
            return [Path(r).expanduser() for r in self.module_roots]
        ps_module_path = os.environ.get("PSModulePath", "")
        return [Path(p) for p in ps_module_path.split(os.pathsep) if p]

    def modules_for(self, names: List[str]) -> List[ModuleRequirement]:
        """Return the configured requirements for the given module names, in order."""
        by_name = {m.name.lower(): m for m in self.modules}
        resolved = []
        for name in names:
            requirement = by_name.get(name.lower())
            resolved.append(requirement or ModuleRequirement(name=name))
        return resolved

    def get_log_file_path(self) -> Path:
        """Log file path with {date} interpolation."""
        from datetime import datetime

        default = str(get_gcpublish_home() / "logs" / "gcpublish-{date}.log")
        log_output = self.logging.get("output", default)
        log_output = log_output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output).expanduser()

    def get_log_level(self) -> str:
        return self.logging.get("level", "INFO").upper()

    def get_log_format(self) -> str:
        """Log format (structured or pretty)."""
        return self.logging.get("format", "structured")


def load_config(config_path: Optional[Path] = None) -> GcPublishConfig:
    """
    Load gcpublish configuration from YAML.

    Args:
        config_path: Path to config file. Defaults to $GCPUBLISH_HOME/config.yaml

    Returns:
        GcPublishConfig instance

    Raises:
        FileNotFoundError: If the config file is missing
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_config_path()

    if not config_path.exists():
        raise FileNotFoundError(
            f"gcpublish config.yaml not found at {config_path}. Run 'gcpublish init'."
        )

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if not data:
        raise ConfigError("Configuration file is empty")

    env_file = data.get("env_file")
    if env_file:
        load_dotenv(Path(env_file).expanduser(), override=False)

    return GcPublishConfig.from_dict(data)
