"""
Guest configuration policy definition generation.

Builds the policy definition document that points Azure Policy at an
uploaded package. Audit mode produces an auditIfNotExists rule; the apply
modes produce deployIfNotExists with a deployment that creates the guest
configuration assignment on each matching machine.
"""

import json
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List

from gcpublish.config import PolicyOptions


GUEST_CONFIGURATION_ASSIGNMENTS = "Microsoft.GuestConfiguration/guestConfigurationAssignments"
# Guest Configuration Resource Contributor
GUEST_CONFIGURATION_CONTRIBUTOR_ROLE = (
    "/providers/Microsoft.Authorization/roleDefinitions/088ab73d-1256-47ae-bea9-9de8e7131f31"
)
POLICY_ID_NAMESPACE = uuid.UUID("6c1ce3f4-4c84-4a1d-9d2b-4a0e2f1f6a10")


class EnforcementMode(str, Enum):
    """How a published configuration is enforced."""

    AUDIT = "Audit"
    APPLY_AND_MONITOR = "ApplyAndMonitor"
    APPLY_AND_AUTOCORRECT = "ApplyAndAutoCorrect"

    @property
    def effect(self) -> str:
        return "auditIfNotExists" if self is EnforcementMode.AUDIT else "deployIfNotExists"

    @property
    def package_type(self) -> str:
        """metaconfig.json Type for packages published in this mode."""
        return "Audit" if self is EnforcementMode.AUDIT else "AuditAndSet"


def default_policy_id(name: str) -> str:
    """Stable policy id for a configuration name, so re-publishing updates in place."""
    return str(uuid.uuid5(POLICY_ID_NAMESPACE, name))


def _machine_conditions(options: PolicyOptions) -> Dict[str, Any]:
    os_prefix = "Windows*" if options.platform == "Windows" else "Linux*"
    conditions: List[Dict[str, Any]] = [
        {
            "allOf": [
                {"field": "type", "equals": "Microsoft.Compute/virtualMachines"},
                {
                    "field": "Microsoft.Compute/virtualMachines/storageProfile.osDisk.osType",
                    "like": os_prefix,
                },
            ]
        }
    ]
    if options.include_arc_machines:
        conditions.append(
            {
                "allOf": [
                    {"field": "type", "equals": "Microsoft.HybridCompute/machines"},
                    {"field": "Microsoft.HybridCompute/imageOffer", "like": os_prefix.lower()},
                ]
            }
        )
    return {"anyOf": conditions}


def _deployment(name: str, version: str, content_uri: str, content_hash: str, mode: EnforcementMode) -> Dict[str, Any]:
    assignment = {
        "name": name,
        "version": version,
        "contentUri": content_uri,
        "contentHash": content_hash,
        "assignmentType": mode.value,
        "configurationParameter": [],
    }
    return {
        "properties": {
            "mode": "incremental",
            "parameters": {
                "vmName": {"value": "[field('name')]"},
                "location": {"value": "[field('location')]"},
                "type": {"value": "[field('type')]"},
            },
            "template": {
                "$schema": "https://schema.management.azure.com/schemas/2015-01-01/deploymentTemplate.json#",
                "contentVersion": "1.0.0.0",
                "parameters": {
                    "vmName": {"type": "string"},
                    "location": {"type": "string"},
                    "type": {"type": "string"},
                },
                "resources": [
                    {
                        "condition": "[equals(toLower(parameters('type')), toLower('Microsoft.Compute/virtualMachines'))]",
                        "apiVersion": "2022-01-25",
                        "type": "Microsoft.Compute/virtualMachines/providers/guestConfigurationAssignments",
                        "name": f"[concat(parameters('vmName'), '/Microsoft.GuestConfiguration/{name}')]",
                        "location": "[parameters('location')]",
                        "properties": {"guestConfiguration": assignment},
                    },
                    {
                        "condition": "[equals(toLower(parameters('type')), toLower('Microsoft.HybridCompute/machines'))]",
                        "apiVersion": "2022-01-25",
                        "type": "Microsoft.HybridCompute/machines/providers/guestConfigurationAssignments",
                        "name": f"[concat(parameters('vmName'), '/Microsoft.GuestConfiguration/{name}')]",
                        "location": "[parameters('location')]",
                        "properties": {"guestConfiguration": assignment},
                    },
                ],
            },
        }
    }


def build_policy_definition(
    name: str,
    version: str,
    content_uri: str,
    content_hash: str,
    display_name: str,
    description: str = "",
    mode: EnforcementMode = EnforcementMode.AUDIT,
    options: PolicyOptions | None = None,
    policy_id: str | None = None,
) -> Dict[str, Any]:
    """
    Build a guest configuration policy definition document.

    Args:
        name: Configuration/package name
        version: Package version
        content_uri: URI the agent downloads the package from
        content_hash: SHA256 of the package (upper-case hex)
        display_name: Policy display name
        description: Policy description
        mode: Enforcement mode
        options: Platform, arc and tag options
        policy_id: Definition name; derived from name when omitted

    Returns:
        Definition document with "name" and "properties"
    """
    options = options or PolicyOptions()
    policy_id = policy_id or default_policy_id(name)

    existence_condition = {
        "allOf": [
            {"field": f"{GUEST_CONFIGURATION_ASSIGNMENTS}/complianceStatus", "equals": "Compliant"},
            {"field": f"{GUEST_CONFIGURATION_ASSIGNMENTS}/contentHash", "equals": content_hash},
        ]
    }
    details: Dict[str, Any] = {
        "type": GUEST_CONFIGURATION_ASSIGNMENTS,
        "name": name,
        "existenceCondition": existence_condition,
    }
    if mode is not EnforcementMode.AUDIT:
        details["roleDefinitionIds"] = [GUEST_CONFIGURATION_CONTRIBUTOR_ROLE]
        details["deployment"] = _deployment(name, version, content_uri, content_hash, mode)

    metadata: Dict[str, Any] = {
        "category": options.category,
        "version": options.policy_version,
        "requiredProviders": ["Microsoft.GuestConfiguration"],
        "guestConfiguration": {
            "name": name,
            "version": version,
            "contentType": "Custom",
            "contentUri": content_uri,
            "contentHash": content_hash,
            "assignmentType": mode.value,
            "configurationParameter": {},
        },
    }
    if options.tags:
        metadata["tags"] = dict(options.tags)

    return {
        "name": policy_id,
        "properties": {
            "displayName": display_name,
            "policyType": "Custom",
            "mode": "Indexed",
            "description": description or f"{display_name} ({mode.value})",
            "metadata": metadata,
            "parameters": {},
            "policyRule": {
                "if": _machine_conditions(options),
                "then": {"effect": mode.effect, "details": details},
            },
        },
    }


def write_policy_definition(document: Dict[str, Any], output_dir: Path) -> Path:
    """
    Write a definition document to <output_dir>/<name>_<effect>.json and return the path.

    The contentUri may carry a SAS token, so the directory is owner-only
    (0o700) and the file 0o600.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    output_dir.chmod(0o700)
    guest_configuration = document["properties"]["metadata"]["guestConfiguration"]
    effect = document["properties"]["policyRule"]["then"]["effect"]
    path = output_dir / f"{guest_configuration['name']}_{effect}.json"
    path.touch(mode=0o600, exist_ok=True)
    path.chmod(0o600)
    path.write_text(json.dumps(document, indent=2))
    return path
