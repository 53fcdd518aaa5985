"""
Publish step: upload a package and register/assign its policy.

1. Ensure the storage container exists, upload the package (overwrite).
2. Optionally mint a read-only SAS for the blob.
3. Generate the policy definition and write it next to the package.
4. Register the definition (subscription or management group).
5. Assign it at the configured scope with the requested identity.

Cloud resources created before a failing call are left in place.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from azure.mgmt.resource.policy.models import (
    Identity,
    PolicyAssignment,
    PolicyDefinition,
    UserAssignedIdentitiesValue,
)
from azure.storage.blob import BlobSasPermissions, generate_blob_sas

from gcpublish.config import PolicyOptions
from gcpublish.errors import PreconditionError
from gcpublish.policy import EnforcementMode, build_policy_definition, default_policy_id, write_policy_definition
from gcpublish.session import AzureSession, platform_errors
from gcpublish.steps.base import Step
from gcpublish.utils import get_file_checksum


# User delegation keys are valid for at most seven days
MAX_USER_DELEGATION_HOURS = 7 * 24


class IdentityMode(str, Enum):
    NONE = "None"
    SYSTEM_ASSIGNED = "SystemAssigned"
    USER_ASSIGNED = "UserAssigned"


@dataclass
class PublishResult:
    blob_url: str
    content_uri: str
    content_hash: str
    definition_id: str
    definition_path: Path
    assignment_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "blob_url": self.blob_url,
            "content_uri": self.content_uri.split("?", 1)[0],
            "content_hash": self.content_hash,
            "definition_id": self.definition_id,
            "definition_path": str(self.definition_path),
            "assignment_id": self.assignment_id,
        }


class PublishStep(Step):
    """Uploads a package, registers its policy definition and assigns it."""

    name = "publish"

    def __init__(
        self,
        session: AzureSession,
        package_path: Path,
        package_name: str,
        version: str,
        container: str = "guestconfiguration",
        display_name: Optional[str] = None,
        description: str = "",
        mode: EnforcementMode = EnforcementMode.AUDIT,
        options: Optional[PolicyOptions] = None,
        policy_id: Optional[str] = None,
        definition_dir: Optional[Path] = None,
        use_sas: bool = True,
        sas_expiry_hours: int = 168,
        management_group_id: Optional[str] = None,
        scope: Optional[str] = None,
        assignment_name: Optional[str] = None,
        identity: IdentityMode = IdentityMode.NONE,
        user_assigned_identity_id: Optional[str] = None,
        location: Optional[str] = None,
        assign: bool = True,
        logger: logging.Logger | None = None,
    ):
        super().__init__(logger)
        self.session = session
        self.package_path = Path(package_path)
        self.package_name = package_name
        self.version = version
        self.container = container
        self.display_name = display_name or f"[{package_name}] {package_name} {version}"
        self.description = description
        self.mode = EnforcementMode(mode)
        self.options = options or PolicyOptions()
        self.policy_id = policy_id or default_policy_id(package_name)
        self.definition_dir = Path(definition_dir) if definition_dir else self.package_path.parent / "policies"
        self.use_sas = use_sas
        self.sas_expiry_hours = sas_expiry_hours
        self.management_group_id = management_group_id
        self.scope = scope or f"/subscriptions/{session.subscription_id}"
        self.assignment_name = (assignment_name or package_name)[:64]
        self.identity = IdentityMode(identity)
        self.user_assigned_identity_id = user_assigned_identity_id
        self.location = location
        self.assign = assign

    @property
    def blob_name(self) -> str:
        return self.package_path.name

    def validate(self) -> None:
        if not self.package_path.is_file():
            raise PreconditionError(
                f"Package not found: {self.package_path}. Run 'gcpublish package' first."
            )
        if not self.assign:
            return
        if self.mode is not EnforcementMode.AUDIT and self.identity is IdentityMode.NONE:
            raise PreconditionError(
                f"{self.mode.value} assignments need a managed identity for remediation. "
                "Use --identity SystemAssigned or UserAssigned."
            )
        if self.identity is IdentityMode.USER_ASSIGNED and not self.user_assigned_identity_id:
            raise PreconditionError("UserAssigned identity requires --user-assigned-identity-id")
        if self.identity is not IdentityMode.NONE and not self.location:
            raise PreconditionError("Assignments with a managed identity require a location")

    def execute(self) -> PublishResult:
        content_hash = get_file_checksum(self.package_path)
        blob_url = self._upload()
        content_uri = self._content_uri(blob_url) if self.use_sas else blob_url

        document = build_policy_definition(
            name=self.package_name,
            version=self.version,
            content_uri=content_uri,
            content_hash=content_hash,
            display_name=self.display_name,
            description=self.description,
            mode=self.mode,
            options=self.options,
            policy_id=self.policy_id,
        )
        definition_path = write_policy_definition(document, self.definition_dir)
        definition_id = self._register(document)

        assignment_id = self._assign(definition_id) if self.assign else None

        return PublishResult(
            blob_url=blob_url,
            content_uri=content_uri,
            content_hash=content_hash,
            definition_id=definition_id,
            definition_path=definition_path,
            assignment_id=assignment_id,
        )

    def _upload(self) -> str:
        blob_service = self.session.blob_service

        with platform_errors(f"Preparing container {self.container}"):
            container_client = blob_service.get_container_client(self.container)
            if not container_client.exists():
                self.logger.info(f"Creating storage container {self.container}")
                container_client.create_container()

        with platform_errors(f"Uploading {self.blob_name}"):
            blob_client = container_client.get_blob_client(self.blob_name)
            with open(self.package_path, "rb") as data:
                blob_client.upload_blob(data, overwrite=True)

        self.logger.info(
            f"Uploaded {self.blob_name} to {self.container}",
            extra={"step": self.name, "event": "package_uploaded", "metadata": {"url": blob_client.url}},
        )
        return blob_client.url

    def _content_uri(self, blob_url: str) -> str:
        """Blob URL with a read-only SAS appended."""
        start = datetime.now(timezone.utc) - timedelta(minutes=5)
        sas_kwargs: Dict[str, Any] = {}

        if self.session.storage_account_key:
            expiry = start + timedelta(hours=self.sas_expiry_hours)
            sas_kwargs["account_key"] = self.session.storage_account_key
        else:
            hours = self.sas_expiry_hours
            if hours > MAX_USER_DELEGATION_HOURS:
                self.logger.warning(
                    f"SAS expiry capped at {MAX_USER_DELEGATION_HOURS}h without a storage account key"
                )
                hours = MAX_USER_DELEGATION_HOURS
            expiry = start + timedelta(hours=hours)
            with platform_errors("Requesting user delegation key"):
                sas_kwargs["user_delegation_key"] = self.session.blob_service.get_user_delegation_key(
                    key_start_time=start, key_expiry_time=expiry
                )

        token = generate_blob_sas(
            account_name=self.session.storage_account,
            container_name=self.container,
            blob_name=self.blob_name,
            permission=BlobSasPermissions(read=True),
            start=start,
            expiry=expiry,
            **sas_kwargs,
        )
        return f"{blob_url}?{token}"

    def _register(self, document: Dict[str, Any]) -> str:
        props = document["properties"]
        definition = PolicyDefinition(
            policy_type=props["policyType"],
            mode=props["mode"],
            display_name=props["displayName"],
            description=props["description"],
            policy_rule=props["policyRule"],
            metadata=props["metadata"],
            parameters=props["parameters"],
        )

        operations = self.session.policy.policy_definitions
        with platform_errors(f"Registering policy definition {self.policy_id}"):
            if self.management_group_id:
                created = operations.create_or_update_at_management_group(
                    policy_definition_name=self.policy_id,
                    management_group_id=self.management_group_id,
                    parameters=definition,
                )
            else:
                created = operations.create_or_update(
                    policy_definition_name=self.policy_id,
                    parameters=definition,
                )

        self.logger.info(
            f"Registered policy definition {created.id}",
            extra={"step": self.name, "event": "definition_registered", "metadata": {"id": created.id}},
        )
        return created.id

    def _identity(self) -> Optional[Identity]:
        if self.identity is IdentityMode.SYSTEM_ASSIGNED:
            return Identity(type="SystemAssigned")
        if self.identity is IdentityMode.USER_ASSIGNED:
            return Identity(
                type="UserAssigned",
                user_assigned_identities={self.user_assigned_identity_id: UserAssignedIdentitiesValue()},
            )
        return None

    def _assign(self, definition_id: str) -> str:
        identity = self._identity()
        assignment = PolicyAssignment(
            display_name=self.display_name,
            description=self.description or None,
            policy_definition_id=definition_id,
            enforcement_mode="Default",
            identity=identity,
            location=self.location if identity else None,
        )

        with platform_errors(f"Assigning policy {self.assignment_name} at {self.scope}"):
            created = self.session.policy.policy_assignments.create(
                scope=self.scope,
                policy_assignment_name=self.assignment_name,
                parameters=assignment,
            )

        self.logger.info(
            f"Assigned {self.assignment_name} at {self.scope}",
            extra={"step": self.name, "event": "policy_assigned", "metadata": {"id": created.id}},
        )
        return created.id
