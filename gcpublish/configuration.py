"""
Declarative configuration source.

Describes the desired host state that the compile step turns into a MOF.
The shipped configuration checks that one service account exists and is
enabled; it can also be loaded from a YAML file of the form:

    name: ServiceAccountCheck
    node_name: localhost
    resources:
      - account_name: svc-app
        ensure: Present
        disabled: false
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import yaml

from gcpublish.errors import ConfigError, PreconditionError


# Characters Windows does not allow in local account names
INVALID_ACCOUNT_CHARS = set('"/\\[]:;|=,+*?<>@')
MAX_ACCOUNT_NAME_LENGTH = 20


@dataclass
class ServiceAccountResource:
    """A local user account that must exist (and be enabled)."""

    account_name: str
    ensure: str = "Present"
    disabled: bool = False
    resource_name: str = "ServiceAccount"

    def validate(self) -> None:
        name = self.account_name or ""
        if not name.strip():
            raise ConfigError("Service account name must not be empty")
        if len(name) > MAX_ACCOUNT_NAME_LENGTH:
            raise ConfigError(
                f"Service account name {name!r} is longer than {MAX_ACCOUNT_NAME_LENGTH} characters"
            )
        bad = sorted(INVALID_ACCOUNT_CHARS.intersection(name))
        if bad:
            raise ConfigError(
                f"Service account name {name!r} contains invalid characters: {' '.join(bad)}"
            )
        if self.ensure not in ("Present", "Absent"):
            raise ConfigError(f"ensure must be Present or Absent, got {self.ensure!r}")


@dataclass
class ConfigurationDocument:
    """A named configuration targeting one node."""

    name: str
    node_name: str = "localhost"
    resources: List[ServiceAccountResource] = field(default_factory=list)

    def validate(self) -> None:
        if not isinstance(self.name, str) or not self.name.replace("_", "").isalnum():
            raise ConfigError(
                f"Configuration name {self.name!r} must be alphanumeric (underscores allowed)"
            )
        if not isinstance(self.node_name, str) or not self.node_name:
            raise ConfigError("node_name must not be empty")
        if self.node_name in (".", "..") or any(sep in self.node_name for sep in ("/", "\\")):
            raise ConfigError(f"node_name {self.node_name!r} must not contain path separators")
        if not self.resources:
            raise ConfigError(f"Configuration {self.name} declares no resources")

        seen = set()
        for resource in self.resources:
            resource.validate()
            if resource.resource_name in seen:
                raise ConfigError(f"Duplicate resource name: {resource.resource_name}")
            seen.add(resource.resource_name)


def build_service_account_configuration(
    account_name: str,
    configuration_name: str = "ServiceAccountCheck",
    node_name: str = "localhost",
) -> ConfigurationDocument:
    """Build the single-resource service account configuration."""
    document = ConfigurationDocument(
        name=configuration_name,
        node_name=node_name,
        resources=[ServiceAccountResource(account_name=account_name)],
    )
    document.validate()
    return document


def load_configuration(path: Path) -> ConfigurationDocument:
    """Load a configuration document from YAML."""
    if not path.exists():
        raise PreconditionError(f"Configuration file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level, got {type(data).__name__}")
    items = data.get("resources") or []
    if not isinstance(items, list):
        raise ConfigError(f"{path}: resources must be a list")

    resources = []
    for i, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            raise ConfigError(f"{path}: resource #{i} must be a mapping")
        if "account_name" not in item:
            raise ConfigError(f"{path}: resource #{i} is missing account_name")
        resources.append(
            ServiceAccountResource(
                account_name=str(item["account_name"]),
                ensure=item.get("ensure", "Present"),
                disabled=bool(item.get("disabled", False)),
                resource_name=item.get("resource_name", f"ServiceAccount{i}" if i > 1 else "ServiceAccount"),
            )
        )

    document = ConfigurationDocument(
        name=data.get("name", path.stem),
        node_name=data.get("node_name", "localhost"),
        resources=resources,
    )
    document.validate()
    return document
