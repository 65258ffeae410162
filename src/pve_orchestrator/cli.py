#!/usr/bin/env python3
"""
Command-line interface for VM provisioning operations.

Every command loads the orchestrator's records from a YAML state file, runs
one operation against the configured cluster and writes the records back.
"""

import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Optional

import click
import yaml

from pve_orchestrator import __version__
from pve_orchestrator.client import OrchestratorClient
from pve_orchestrator.config import DEFAULT_CONFIG_PATHS, AppConfig, config_loader
from pve_orchestrator.exceptions import OrchestratorError
from pve_orchestrator.logging import logger
from pve_orchestrator.models import (
    CloneTemplateRequest,
    ProvisionRequest,
    QuotaPlan,
    ReconfigureRequest,
    Requester,
    Template,
)
from pve_orchestrator.stores import StateFile


DEFAULT_STATE_PATH = "~/.local/share/pve-orchestrator/state.yaml"


def setup_logging(
    verbose: bool = False, quiet: bool = False, log_level: str = "INFO"
) -> None:
    """Setup logging configuration."""
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = getattr(logging, log_level.upper(), logging.INFO)

    logger.set_level(level)


def emit(ctx: Any, data: Dict[str, Any], text: Optional[str] = None) -> None:
    """Print a result in the selected output format."""
    output_format = ctx.obj["output_format"]
    if output_format == "json":
        click.echo(json.dumps(data, indent=2, default=str))
    elif output_format == "yaml":
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
    else:
        click.echo(text if text is not None else "\n".join(f"{k}: {v}" for k, v in data.items()))


def run_operation(ctx: Any, operation: Any) -> Any:
    """
    Run one async operation against an orchestrator backed by the state file.

    Args:
        ctx: Click context holding config, state path and requester
        operation: Coroutine function taking the OrchestratorClient

    Returns:
        Whatever the operation returns
    """
    state = StateFile(ctx.obj["state_path"])

    async def run() -> Any:
        stores = state.load()
        async with OrchestratorClient(ctx.obj["config"], stores=stores) as client:
            try:
                return await operation(client)
            finally:
                state.save(stores)

    try:
        return asyncio.run(run())
    except OrchestratorError as e:
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(e.error_code)


def finish(ctx: Any, result: Any, success_text: str) -> None:
    data = asdict(result)
    if result.success:
        emit(ctx, data, f"✓ {success_text}")
    else:
        if ctx.obj["output_format"] != "text":
            emit(ctx, data)
        click.echo(f"✗ {result.error_kind}: {result.error}", err=True)
        sys.exit(1)


@click.group()
@click.option("--config", "-c", default=None, help="Configuration file path")
@click.option(
    "--state",
    "-s",
    default=None,
    help=f"State file path (default: $PVE_ORCH_STATE or {DEFAULT_STATE_PATH})",
)
@click.option("--tenant", "-t", default="admin", help="Tenant id to act as")
@click.option("--admin/--no-admin", default=False, help="Act with admin rights")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-error output")
@click.option(
    "--output",
    "-o",
    type=click.Choice(["text", "json", "yaml"]),
    default="text",
    help="Output format",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    default=None,
    help="Log level (default: from configuration)",
)
@click.version_option(version=__version__)
@click.pass_context
def cli(
    ctx: Any,
    config: Optional[str],
    state: Optional[str],
    tenant: str,
    admin: bool,
    verbose: bool,
    quiet: bool,
    output: str,
    log_level: Optional[str],
) -> None:
    """Provision and reclaim Proxmox VMs with per-tenant quotas."""
    ctx.ensure_object(dict)
    try:
        app_config = config_loader.load_config(config)
    except OrchestratorError as e:
        click.echo(f"✗ Error: {e}", err=True)
        sys.exit(e.error_code)

    setup_logging(verbose, quiet, log_level or app_config.log_level)

    ctx.obj["config"] = app_config
    ctx.obj["config_path"] = config
    ctx.obj["state_path"] = state or os.getenv("PVE_ORCH_STATE", DEFAULT_STATE_PATH)
    ctx.obj["requester"] = Requester(tenant_id=tenant, is_admin=admin)
    ctx.obj["output_format"] = output
    ctx.obj["quiet"] = quiet


@cli.command()
@click.argument("template_id")
@click.argument("name")
@click.option("--node", "-n", required=True, help="Target node")
@click.option("--cores", type=int, required=True, help="CPU cores")
@click.option("--memory", type=int, required=True, help="Memory in MB")
@click.option("--disk", type=int, required=True, help="Disk size in GB")
@click.option("--storage", default=None, help="Target storage (default: from configuration)")
@click.option("--ci-user", default=None, help="Cloud-init user")
@click.option("--ci-password", default=None, help="Cloud-init password")
@click.pass_context
def provision(
    ctx: Any,
    template_id: str,
    name: str,
    node: str,
    cores: int,
    memory: int,
    disk: int,
    storage: Optional[str],
    ci_user: Optional[str],
    ci_password: Optional[str],
) -> None:
    """Provision a VM from a template."""
    request = ProvisionRequest(
        template_id=template_id,
        name=name,
        target_node=node,
        cpu_cores=cores,
        memory_mb=memory,
        disk_gb=disk,
        ci_user=ci_user,
        ci_password=ci_password,
        storage=storage,
    )
    if not ctx.obj["quiet"]:
        click.echo(f"Provisioning '{name}' from template {template_id} on {node}...", err=True)
    result = run_operation(ctx, lambda client: client.provision(request, ctx.obj["requester"]))
    finish(ctx, result, f"Provisioned VM '{result.vm_name}' (id {result.vm_id}, task {result.task_id})")


@cli.command()
@click.argument("task_id")
@click.option("--live", is_flag=True, help="Include the backend's status of the running step")
@click.pass_context
def status(ctx: Any, task_id: str, live: bool) -> None:
    """Show the progress of a task."""
    snapshot = run_operation(
        ctx, lambda client: client.get_task_status(task_id, ctx.obj["requester"], live=live)
    )
    if not snapshot.success:
        finish(ctx, snapshot, "")
        return

    task = snapshot.task
    lines = [
        f"Task {task['task_id']}: {task['status']} ({task['progress']}%)",
    ]
    for index, step in enumerate(task["steps"]):
        detail = step["error"] or step["message"] or ""
        lines.append(f"  [{index}] {step['name']}: {step['status']} {detail}".rstrip())
    if snapshot.remote_status:
        lines.append(f"  remote: {snapshot.remote_status} {snapshot.remote_exit_status or ''}".rstrip())
    emit(ctx, asdict(snapshot), "\n".join(lines))


@cli.command()
@click.argument("vm_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def delete(ctx: Any, vm_id: str, yes: bool) -> None:
    """Delete a VM and reclaim its resources."""
    if not yes:
        click.confirm(f"Delete VM {vm_id}?", abort=True)
    result = run_operation(ctx, lambda client: client.delete_vm(vm_id, ctx.obj["requester"]))
    finish(ctx, result, f"Deleted VM {vm_id} ({result.remote_node}/{result.remote_id})")


@cli.command("clone-template")
@click.argument("template_id")
@click.argument("name")
@click.option("--node", "-n", default=None, help="Target node (default: source template's node)")
@click.option("--description", "-d", default=None, help="Description of the new template")
@click.option("--storage", default=None, help="Target storage (default: from configuration)")
@click.pass_context
def clone_template(
    ctx: Any,
    template_id: str,
    name: str,
    node: Optional[str],
    description: Optional[str],
    storage: Optional[str],
) -> None:
    """Clone a template and seal the copy as a new template."""
    request = CloneTemplateRequest(
        template_id=template_id,
        name=name,
        target_node=node,
        description=description,
        storage=storage,
    )
    result = run_operation(
        ctx, lambda client: client.clone_template(request, ctx.obj["requester"])
    )
    finish(ctx, result, f"Created template {result.new_template_id} (task {result.task_id})")


@cli.command()
@click.argument("vm_id")
@click.option("--name", default=None, help="New VM name")
@click.option("--cores", type=int, default=None, help="CPU cores")
@click.option("--memory", type=int, default=None, help="Memory in MB")
@click.option("--disk", type=int, default=None, help="Disk size in GB (grow only)")
@click.option("--ci-user", default=None, help="Cloud-init user")
@click.option("--ci-password", default=None, help="Cloud-init password")
@click.pass_context
def reconfigure(
    ctx: Any,
    vm_id: str,
    name: Optional[str],
    cores: Optional[int],
    memory: Optional[int],
    disk: Optional[int],
    ci_user: Optional[str],
    ci_password: Optional[str],
) -> None:
    """Change the configuration of a stopped VM."""
    request = ReconfigureRequest(
        vm_id=vm_id,
        name=name,
        cpu_cores=cores,
        memory_mb=memory,
        disk_gb=disk,
        ci_user=ci_user,
        ci_password=ci_password,
    )
    result = run_operation(
        ctx, lambda client: client.reconfigure_vm(request, ctx.obj["requester"])
    )
    finish(ctx, result, f"Reconfigured VM {vm_id} (task {result.task_id})")


@cli.command("purge-tasks")
@click.option("--days", type=int, default=None, help="Maximum age in days (default: from configuration)")
@click.pass_context
def purge_tasks(ctx: Any, days: Optional[int]) -> None:
    """Delete task records older than the retention window."""
    removed = run_operation(ctx, lambda client: client.purge_tasks(days))
    emit(ctx, {"removed": removed}, f"Removed {removed} task(s)")


@cli.group()
def plan() -> None:
    """Manage quota plans in the state file."""
    pass


@plan.command("set")
@click.argument("plan_id")
@click.option("--tenant", "tenants", multiple=True, help="Tenant to assign the plan to")
@click.option("--vm-cores", type=int, required=True, help="Max CPU cores per VM")
@click.option("--vm-memory", type=int, required=True, help="Max memory per VM (MB)")
@click.option("--vm-disk", type=int, required=True, help="Max disk per VM (GB)")
@click.option("--total-cores", type=int, required=True, help="Max CPU cores in total")
@click.option("--total-memory", type=int, required=True, help="Max memory in total (MB)")
@click.option("--total-disk", type=int, required=True, help="Max disk in total (GB)")
@click.option("--max-vms", type=int, default=None, help="Max number of VMs")
@click.pass_context
def plan_set(
    ctx: Any,
    plan_id: str,
    tenants: Any,
    vm_cores: int,
    vm_memory: int,
    vm_disk: int,
    total_cores: int,
    total_memory: int,
    total_disk: int,
    max_vms: Optional[int],
) -> None:
    """Create or replace a quota plan and assign it to tenants."""
    state = StateFile(ctx.obj["state_path"])
    stores = state.load()
    quota_plan = QuotaPlan(
        plan_id=plan_id,
        name=plan_id,
        max_cpu_cores_per_vm=vm_cores,
        max_memory_per_vm=vm_memory,
        max_storage_per_vm=vm_disk,
        max_cpu_cores_sum=total_cores,
        max_memory_sum=total_memory,
        max_storage_sum=total_disk,
        max_vms=max_vms,
    )
    stores.plans.plans[plan_id] = quota_plan
    for tenant in tenants:
        stores.plans.assign(tenant, quota_plan)
    state.save(stores)
    emit(ctx, quota_plan.to_dict(), f"✓ Saved plan {plan_id}")


@cli.group()
def template() -> None:
    """Manage templates in the state file."""
    pass


@template.command("add")
@click.argument("template_id")
@click.option("--node", "-n", required=True, help="Node holding the template")
@click.option("--vmid", type=int, required=True, help="Remote id of the template")
@click.option("--owner", required=True, help="Owning tenant")
@click.option("--description", "-d", default="", help="Description")
@click.option("--ci-user", default=None, help="Default cloud-init user")
@click.option("--ci-password", default=None, help="Default cloud-init password")
@click.option("--public", is_flag=True, help="Visible to every tenant")
@click.pass_context
def template_add(
    ctx: Any,
    template_id: str,
    node: str,
    vmid: int,
    owner: str,
    description: str,
    ci_user: Optional[str],
    ci_password: Optional[str],
    public: bool,
) -> None:
    """Register an existing template."""
    state = StateFile(ctx.obj["state_path"])
    stores = state.load()
    record = Template(
        template_id=template_id,
        description=description,
        node=node,
        remote_vm_id=vmid,
        owner_id=owner,
        ci_user=ci_user,
        ci_password=ci_password,
        is_public=public,
    )
    stores.templates.templates[template_id] = record
    state.save(stores)
    emit(ctx, {"template_id": template_id, "node": node, "vmid": vmid}, f"✓ Saved template {template_id}")


@template.command("delete")
@click.argument("template_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def template_delete(ctx: Any, template_id: str, yes: bool) -> None:
    """Delete a template from its node and drop its record."""
    if not yes:
        click.confirm(f"Delete template {template_id}?", abort=True)
    result = run_operation(
        ctx, lambda client: client.delete_template(template_id, ctx.obj["requester"])
    )
    finish(
        ctx,
        result,
        f"Deleted template {template_id} ({result.remote_node}/{result.remote_id})",
    )


@cli.group()
def config() -> None:
    """Manage configuration settings."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: Any) -> None:
    """Display current configuration."""
    config_data = ctx.obj["config"].model_dump()
    if config_data.get("api_token"):
        config_data["api_token"] = "***"
    emit(ctx, config_data, yaml.safe_dump(config_data, default_flow_style=False))


@config.command("init")
@click.option(
    "--config-dir", default="~/.config/pve-orchestrator", help="Configuration directory"
)
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(config_dir: str, force: bool) -> None:
    """Initialize default configuration."""
    config_path = Path(config_dir).expanduser()
    config_path.mkdir(parents=True, exist_ok=True)

    config_file = config_path / "config.yaml"
    if config_file.exists() and not force:
        click.echo(f"Configuration already exists at {config_file} (use --force)", err=True)
        sys.exit(1)

    default_config = AppConfig().model_dump(exclude={"api_token"})
    default_config["api_token"] = "user@pam!tokenid=secret"

    with open(config_file, "w") as f:
        yaml.safe_dump(default_config, f, default_flow_style=False, sort_keys=False)

    click.echo(f"Configuration initialized at {config_file}")


@config.command("path")
@click.pass_context
def config_path(ctx: Any) -> None:
    """Show where configuration is looked up."""
    explicit = ctx.obj.get("config_path")
    if explicit:
        click.echo(f"{explicit} (explicit)")
        return
    for path in DEFAULT_CONFIG_PATHS:
        expanded = os.path.expanduser(path)
        marker = " (found)" if os.path.exists(expanded) else ""
        click.echo(f"{expanded}{marker}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
