"""
CLI interface for gcpublish.

Each step is a standalone command: compile → package → publish → monitor.
`gcpublish run` chains the first three. Every command loads the config once,
prepares the PowerShell modules its step declares, runs the step and prints
a short result. Failures print ✗ with the error and exit 1.
"""

import json
from pathlib import Path

import click

from gcpublish import __version__
from gcpublish.errors import GcPublishError
from gcpublish.policy import EnforcementMode
from gcpublish.utils import (
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)


MODE_CHOICE = click.Choice([m.value for m in EnforcementMode], case_sensitive=False)
IDENTITY_CHOICE = click.Choice(["None", "SystemAssigned", "UserAssigned"], case_sensitive=False)


@click.group()
@click.version_option(version=__version__, prog_name="gcpublish")
@click.option("--verbose", is_flag=True, help="Enable debug logging on the console")
@click.pass_context
def main(ctx, verbose):
    """
    gcpublish - Publish and monitor Azure guest configuration packages.

    Compiles a service account check, packages it, publishes it as a
    policy and reports compliance.
    """
    from gcpublish.config import load_config

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    try:
        ctx.obj["config"] = load_config()
    except (FileNotFoundError, GcPublishError) as e:
        # init runs without a config; every other command checks config_error
        ctx.obj["config_error"] = str(e)


def _config(ctx):
    """Return the loaded config and set up logging, or exit."""
    if "config" not in ctx.obj:
        print_error(f"Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}")
        click.echo("Run 'gcpublish init' to create a configuration file.", err=True)
        raise SystemExit(1)

    config = ctx.obj["config"]
    verbose = ctx.obj.get("verbose", False)
    setup_logging(
        config.get_log_file_path(),
        "DEBUG" if verbose else config.get_log_level(),
        config.get_log_format(),
        console_output=verbose,
    )
    return config


def _runner(config):
    from gcpublish.powershell import PowerShellRunner

    return PowerShellRunner(config.powershell_executable)


def _fail(message: str):
    print_error(message)
    raise SystemExit(1)


def _prepare(config, runner, step_cls) -> None:
    from gcpublish.pipeline import prepare_step

    installed = prepare_step(step_cls, config, runner)
    for name in installed:
        print_info(f"Installed PowerShell module {name}")


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize gcpublish configuration."""
    import yaml

    from gcpublish.config import DEFAULT_MODULES, get_gcpublish_home

    home = get_gcpublish_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = {
        "schema_version": 1,
        "subscription_id": "00000000-0000-0000-0000-000000000000",
        "tenant_id": None,
        "resource_group": None,
        "location": "eastus",
        "storage_account": "gcpublishpackages",
        "container": "guestconfiguration",
        "output_root": "~/gcpublish/out",
        "use_sas": True,
        "sas_expiry_hours": 168,
        "powershell_executable": "pwsh",
        "modules": DEFAULT_MODULES,
        "policy": {"platform": "Windows", "policy_version": "1.0.0", "include_arc_machines": False},
        "logging": {"level": "INFO", "format": "structured"},
        "env_file": str(home / ".env"),
    }
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text(
            "# AZURE_SUBSCRIPTION_ID=...\n# AZURE_TENANT_ID=...\n# AZURE_STORAGE_KEY=...\n"
        )

    click.echo(f"Initialized gcpublish config at {cfg_path}")
    click.echo("Edit subscription_id and storage_account before publishing.")


@main.group("env")
def env_group():
    """Prepare the local PowerShell environment."""
    pass


@env_group.command("prepare")
@click.option("--module", "module_names", multiple=True, help="Only prepare these modules")
@click.pass_context
def env_prepare(ctx, module_names):
    """Install configured PowerShell modules that are missing or too old."""
    from gcpublish.environment import ensure_modules

    config = _config(ctx)
    requirements = config.modules_for(list(module_names)) if module_names else config.modules

    try:
        installed = ensure_modules(_runner(config), requirements)
    except (GcPublishError, OSError) as e:
        _fail(f"Environment preparation failed: {e}")

    for name in installed:
        print_info(f"Installed {name}")
    print_success(f"{len(requirements)} module(s) ready")


@main.command("compile")
@click.option("--account-name", help="Local account whose presence is checked")
@click.option("--from-file", type=click.Path(path_type=Path), help="Configuration YAML instead of --account-name")
@click.option("--configuration-name", default="ServiceAccountCheck", show_default=True)
@click.option("--node-name", default="localhost", show_default=True)
@click.option("--output-root", type=click.Path(path_type=Path), help="Default: <output_root>/mof")
@click.pass_context
def compile_cmd(ctx, account_name, from_file, configuration_name, node_name, output_root):
    """Compile the service account configuration to a MOF descriptor."""
    from gcpublish.configuration import build_service_account_configuration, load_configuration
    from gcpublish.steps.compile import CompileStep

    config = _config(ctx)
    if bool(account_name) == bool(from_file):
        raise click.UsageError("Pass exactly one of --account-name or --from-file")

    try:
        if from_file:
            document = load_configuration(from_file)
        else:
            document = build_service_account_configuration(
                account_name, configuration_name=configuration_name, node_name=node_name
            )
        result = CompileStep(document, output_root or config.output_path / "mof").run()
    except (GcPublishError, OSError) as e:
        _fail(f"Compile failed: {e}")

    print_success(f"Compiled {result.configuration_name}: {result.descriptor_path}")


@main.command("package")
@click.option("--descriptor", type=click.Path(path_type=Path), help="Compiled MOF (default: <output_root>/mof/<name>/localhost.mof)")
@click.option("--name", "package_name", required=True, help="Package name")
@click.option("--version", "version", default="1.0.0", show_default=True)
@click.option("--output-dir", type=click.Path(path_type=Path), help="Default: <output_root>/packages")
@click.option("--mode", type=MODE_CHOICE, default="Audit", show_default=True)
@click.option("--module-dir", "module_dirs", multiple=True, type=click.Path(path_type=Path),
              help="Module folder to bundle (default: installed PSDscResources)")
@click.option("--force", is_flag=True, help="Overwrite an existing package")
@click.option("--skip-verify", is_flag=True, help="Do not evaluate the package locally")
@click.option("--apply", is_flag=True, help="Apply the package to this machine after verifying")
@click.pass_context
def package_cmd(ctx, descriptor, package_name, version, output_dir, mode, module_dirs, force, skip_verify, apply):
    """Bundle a compiled descriptor into a guest configuration package."""
    from gcpublish.pipeline import bundled_module_dirs, local_engine
    from gcpublish.steps.compile import descriptor_path_for
    from gcpublish.steps.package import PackageStep

    config = _config(ctx)
    if apply and skip_verify:
        raise click.UsageError("--apply and --skip-verify are mutually exclusive")

    runner = _runner(config)
    engine, invalidator = None, None
    try:
        if not skip_verify:
            _prepare(config, runner, PackageStep)
            engine, invalidator = local_engine(config, runner)
            module_dirs = module_dirs or bundled_module_dirs(runner)

        step = PackageStep(
            descriptor_path=descriptor or descriptor_path_for(config.output_path / "mof", package_name, "localhost"),
            package_name=package_name,
            version=version,
            output_dir=output_dir or config.output_path / "packages",
            mode=EnforcementMode(mode),
            force=force,
            module_dirs=module_dirs,
            engine=engine,
            invalidator=invalidator,
            apply=apply,
        )
        result = step.run()
    except (GcPublishError, OSError) as e:
        _fail(f"Package failed: {e}")

    print_success(f"Created {result.package_path}")
    click.echo(f"  SHA256: {result.content_hash}")
    if result.compliant is False:
        print_warning("Package is not compliant on this machine")
    elif result.compliant:
        print_info("Package is compliant on this machine")
    if result.applied:
        print_info("Package applied locally")


@main.command("clear-cache")
@click.option("--name", "package_name", required=True, help="Package name")
@click.option("--version", "version", required=True, help="Package version")
@click.pass_context
def clear_cache(ctx, package_name, version):
    """Remove the evaluation engine's cached extraction of a package."""
    from gcpublish.cache import PackageId
    from gcpublish.pipeline import local_engine

    config = _config(ctx)
    _, invalidator = local_engine(config, _runner(config))

    try:
        cleared = invalidator.clear(PackageId(package_name, version))
    except (GcPublishError, OSError) as e:
        _fail(str(e))

    if not cleared:
        print_info(f"No cached extraction of {package_name}-{version}")
    for path in cleared:
        print_success(f"Cleared {path}")


@main.group("dsc")
def dsc_group():
    """Test or apply compiled descriptors on this machine."""
    pass


@dsc_group.command("test")
@click.option("--path", "folder", required=True, type=click.Path(path_type=Path), help="Folder of compiled MOFs")
@click.pass_context
def dsc_test(ctx, folder):
    """Test whether this machine is in the desired state."""
    from gcpublish.evaluation import DscRunner

    config = _config(ctx)
    try:
        result = DscRunner(_runner(config)).test(folder)
    except (GcPublishError, OSError) as e:
        _fail(f"DSC test failed: {e}")

    if result.in_desired_state:
        print_success("In desired state")
        return
    print_warning("Not in desired state")
    for resource in result.resources_not_in_desired_state:
        click.echo(f"  {resource}")


@dsc_group.command("apply")
@click.option("--path", "folder", required=True, type=click.Path(path_type=Path), help="Folder of compiled MOFs")
@click.pass_context
def dsc_apply(ctx, folder):
    """Apply compiled descriptors to this machine."""
    from gcpublish.evaluation import DscRunner

    config = _config(ctx)
    try:
        DscRunner(_runner(config)).apply(folder)
    except (GcPublishError, OSError) as e:
        _fail(f"DSC apply failed: {e}")
    print_success(f"Applied {folder}")


def _publish_options(display_name, description, policy_id, assignment_name, identity,
                     user_assigned_identity_id, no_assign):
    from gcpublish.steps.publish import IdentityMode

    return {
        "display_name": display_name,
        "description": description,
        "policy_id": policy_id,
        "assignment_name": assignment_name,
        "identity": IdentityMode(identity),
        "user_assigned_identity_id": user_assigned_identity_id,
        "assign": not no_assign,
    }


def publish_options(func):
    """Options shared by publish and run."""
    decorators = [
        click.option("--display-name", help="Policy display name"),
        click.option("--description", default="", help="Policy description"),
        click.option("--policy-id", help="Policy definition name (default: derived from package name)"),
        click.option("--assignment-name", help="Assignment name (default: package name)"),
        click.option("--identity", type=IDENTITY_CHOICE, default="None", show_default=True),
        click.option("--user-assigned-identity-id", help="Resource id of the user-assigned identity"),
        click.option("--no-assign", is_flag=True, help="Register the definition without assigning it"),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


@main.command("publish")
@click.option("--package", "package_path", type=click.Path(path_type=Path), help="Default: <output_root>/packages/<name>-<version>.zip")
@click.option("--name", "package_name", required=True, help="Package name")
@click.option("--version", "version", default="1.0.0", show_default=True)
@click.option("--mode", type=MODE_CHOICE, default="Audit", show_default=True)
@click.option("--no-sas", is_flag=True, help="Reference the blob URL without a SAS token")
@publish_options
@click.pass_context
def publish_cmd(ctx, package_path, package_name, version, mode, no_sas, **options):
    """Upload a package and register and assign its policy."""
    from gcpublish.session import AzureSession
    from gcpublish.steps.package import package_path_for
    from gcpublish.steps.publish import PublishStep

    config = _config(ctx)
    try:
        step = PublishStep(
            session=AzureSession.from_config(config),
            package_path=package_path or package_path_for(config.output_path / "packages", package_name, version),
            package_name=package_name,
            version=version,
            container=config.container,
            mode=EnforcementMode(mode),
            options=config.policy,
            use_sas=config.use_sas and not no_sas,
            sas_expiry_hours=config.sas_expiry_hours,
            management_group_id=config.management_group_id,
            scope=config.scope,
            location=config.location,
            **_publish_options(**options),
        )
        result = step.run()
    except (GcPublishError, OSError) as e:
        _fail(f"Publish failed: {e}")

    print_success(f"Uploaded {result.blob_url}")
    print_success(f"Registered {result.definition_id}")
    click.echo(f"  Definition: {result.definition_path}")
    if result.assignment_id:
        print_success(f"Assigned {result.assignment_id}")


@main.command("monitor")
@click.option("--assignment-name", required=True, help="Policy assignment name")
@click.option("--configuration-name", help="Guest configuration name (default: assignment name)")
@click.option("--top", default=50, show_default=True, help="Maximum policy states to return")
@click.option("--resource-group", help="Assignment is scoped to this resource group")
@click.option("--json", "as_json", is_flag=True, help="Print the full result as JSON")
@click.pass_context
def monitor_cmd(ctx, assignment_name, configuration_name, top, resource_group, as_json):
    """Report compliance for a published assignment."""
    from gcpublish.session import AzureSession
    from gcpublish.steps.monitor import MonitorStep

    config = _config(ctx)
    try:
        result = MonitorStep(
            session=AzureSession.from_config(config),
            assignment_name=assignment_name,
            configuration_name=configuration_name,
            top=top,
            resource_group=resource_group,
        ).run()
    except (GcPublishError, OSError) as e:
        _fail(f"Monitor failed: {e}")

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    for status, count in sorted(result.summary.items()):
        click.echo(f"  {status}: {count}")
    for record in result.records:
        stamp = record.timestamp.isoformat() if record.timestamp else "-"
        click.echo(f"  {stamp}  {record.compliance_state:<14} {record.resource_id}")

    if result.compliant is None:
        print_info(f"No compliance data reported yet for {assignment_name}")
    elif result.compliant:
        print_success(f"{assignment_name} is compliant")
    else:
        print_warning(f"{assignment_name} is not compliant")
        for machine in result.non_compliant_machines:
            click.echo(f"  {machine.get('machine')} ({machine.get('resourceGroup')})")


@main.command("run")
@click.option("--account-name", required=True, help="Local account whose presence is checked")
@click.option("--name", "package_name", default="ServiceAccountCheck", show_default=True)
@click.option("--version", "version", default="1.0.0", show_default=True)
@click.option("--mode", type=MODE_CHOICE, default="Audit", show_default=True)
@click.option("--force", is_flag=True, help="Overwrite an existing package")
@click.option("--skip-verify", is_flag=True, help="Do not evaluate the package locally")
@publish_options
@click.pass_context
def run_cmd(ctx, account_name, package_name, version, mode, force, skip_verify, **options):
    """Compile, package and publish in one go."""
    from gcpublish.pipeline import Pipeline
    from gcpublish.session import AzureSession

    config = _config(ctx)
    print_banner(f"gcpublish {package_name} {version}")

    try:
        result = Pipeline(config, session_factory=AzureSession.from_config, runner=_runner(config)).run(
            account_name=account_name,
            package_name=package_name,
            version=version,
            mode=EnforcementMode(mode),
            force=force,
            verify=not skip_verify,
            publish_options=_publish_options(**options),
        )
    except (GcPublishError, OSError) as e:
        _fail(f"Pipeline failed: {e}")

    for step_name in result.steps:
        print_success(f"{step_name} completed")
    print_info(f"Duration: {format_duration(result.duration_seconds)}")


if __name__ == "__main__":
    main()
