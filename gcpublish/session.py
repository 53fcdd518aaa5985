"""
Azure session passed explicitly to the publish and monitor steps.

Holds one credential and builds the SDK clients lazily, so a step only
pays for the clients it uses and tests can hand steps a fake session
exposing the same attributes.
"""

import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Iterator, Optional

from gcpublish.errors import PlatformError


@contextmanager
def platform_errors(action: str) -> Iterator[None]:
    """Convert Azure SDK failures raised inside the block into PlatformError."""
    from azure.core.exceptions import AzureError

    try:
        yield
    except AzureError as e:
        message = getattr(e, "message", None) or str(e)
        raise PlatformError(f"{action} failed: {message}") from e


@dataclass
class AzureSession:
    """Authenticated platform session."""

    subscription_id: str
    storage_account: Optional[str] = None
    tenant_id: Optional[str] = None
    storage_account_key: Optional[str] = field(default=None, repr=False)
    credential: Any = field(default=None, repr=False)

    def __post_init__(self):
        if self.credential is None:
            from azure.identity import DefaultAzureCredential

            kwargs = {}
            if self.tenant_id:
                kwargs["additionally_allowed_tenants"] = [self.tenant_id]
            self.credential = DefaultAzureCredential(**kwargs)

    @classmethod
    def from_config(cls, config) -> "AzureSession":
        return cls(
            subscription_id=config.subscription_id,
            storage_account=config.storage_account,
            tenant_id=config.tenant_id,
            storage_account_key=os.environ.get("AZURE_STORAGE_KEY"),
        )

    @property
    def account_url(self) -> str:
        if not self.storage_account:
            raise PlatformError("No storage account configured for this session")
        return f"https://{self.storage_account}.blob.core.windows.net"

    @cached_property
    def blob_service(self):
        from azure.storage.blob import BlobServiceClient

        return BlobServiceClient(account_url=self.account_url, credential=self.credential)

    @cached_property
    def policy(self):
        from azure.mgmt.resource import PolicyClient

        return PolicyClient(self.credential, self.subscription_id)

    @cached_property
    def policy_insights(self):
        from azure.mgmt.policyinsights import PolicyInsightsClient

        # subscription_id is passed per query
        return PolicyInsightsClient(self.credential)

    @cached_property
    def resource_graph(self):
        from azure.mgmt.resourcegraph import ResourceGraphClient

        return ResourceGraphClient(self.credential)
