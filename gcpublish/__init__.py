"""
gcpublish - Azure guest configuration publishing

Compiles a service account check into a MOF, bundles it into a guest
configuration package, publishes it as an Azure Policy and reports
compliance.
"""

__version__ = "0.1.0"


__all__ = ["GcPublishConfig", "load_config", "get_gcpublish_home", "GcPublishError"]

from .config import GcPublishConfig, get_gcpublish_home, load_config
from .errors import GcPublishError
