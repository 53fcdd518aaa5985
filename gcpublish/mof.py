"""MOF rendering for configuration documents.

Produces the same instance-document layout that the PowerShell DSC
compiler emits: a header comment, one instance block per resource and a
trailing OMI_ConfigurationDocument block.
"""

from datetime import datetime
from typing import List

from gcpublish.configuration import ConfigurationDocument, ServiceAccountResource


RESOURCE_MODULE = "PSDscResources"
RESOURCE_MODULE_VERSION = "2.12.0.0"
RESOURCE_CLASS = "MSFT_UserResource"


def mof_string(value: str) -> str:
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def mof_bool(value: bool) -> str:
    return "True" if value else "False"


def _user_instance(
    document: ConfigurationDocument,
    resource: ServiceAccountResource,
    index: int,
    module_version: str,
) -> List[str]:
    resource_id = f"[User]{resource.resource_name}"
    return [
        f"instance of {RESOURCE_CLASS} as ${RESOURCE_CLASS}{index}ref",
        "{",
        f"ResourceID = {mof_string(resource_id)};",
        f" UserName = {mof_string(resource.account_name)};",
        f" Ensure = {mof_string(resource.ensure)};",
        f" Disabled = {mof_bool(resource.disabled)};",
        f" SourceInfo = {mof_string(f'{document.name}::{resource_id}')};",
        f" ModuleName = {mof_string(RESOURCE_MODULE)};",
        f" ModuleVersion = {mof_string(module_version)};",
        f" ConfigurationName = {mof_string(document.name)};",
        "};",
    ]


def render_mof(
    document: ConfigurationDocument,
    generated_by: str,
    generation_host: str,
    generation_date: datetime | None = None,
    module_version: str = RESOURCE_MODULE_VERSION,
) -> str:
    """
    Render a configuration document as MOF text.

    Args:
        document: Validated configuration document
        generated_by: Author recorded in the document
        generation_host: Host name recorded in the document
        generation_date: Timestamp recorded in the document (defaults to now)
        module_version: PSDscResources version the resources bind to

    Returns:
        MOF text ending with a newline
    """
    generation_date = generation_date or datetime.now()
    stamp = generation_date.strftime("%m/%d/%Y %H:%M:%S")

    lines = [
        "/*",
        f"@TargetNode='{document.node_name}'",
        f"@GeneratedBy={generated_by}",
        f"@GenerationDate={stamp}",
        f"@GenerationHost={generation_host}",
        "*/",
        "",
    ]

    for index, resource in enumerate(document.resources, start=1):
        lines.extend(_user_instance(document, resource, index, module_version))
        lines.append("")

    lines.extend([
        "instance of OMI_ConfigurationDocument",
        "{",
        ' Version="2.0.0";',
        ' MinimumCompatibleVersion = "1.0.0";',
        ' CompatibleVersionAdditionalProperties= {"Omi_BaseResource:ConfigurationName"};',
        f" Author={mof_string(generated_by)};",
        f" GenerationDate={mof_string(stamp)};",
        f" GenerationHost={mof_string(generation_host)};",
        f" Name={mof_string(document.name)};",
        "};",
        "",
    ])
    return "\n".join(lines)
