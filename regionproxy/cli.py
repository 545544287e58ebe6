#!/usr/bin/env python3
"""Create a SOCKS proxy through a throwaway AWS EC2 instance in any region.

Prerequisites: AWS credentials (aws configure or AWS_PROFILE), ssh and lsof on PATH.

Usage: region-proxy <command> [options]

Examples:
    region-proxy start --region ap-northeast-1
    region-proxy status
    region-proxy stop
    region-proxy cleanup --region ap-northeast-1
    region-proxy config set-region eu-west-2
"""

import logging
from typing import Annotated

import cyclopts
from cyclopts import Parameter
from rich import print

from .config import (
    REGIONS,
    UNSET_OPTIONS,
    config_file_path,
    default_instance_type,
    load_preferences,
    parse_bool,
    region_name,
    require_region,
    save_preferences,
)
from .errors import RegionProxyError
from .orchestrator import Orchestrator
from .reconcile import Reconciler
from .state import SessionStore
from .utils import error, log, setup_logging, warn

app = cyclopts.App(
    name="region-proxy",
    help="Create a SOCKS proxy through AWS EC2 in any region",
    sort_key=None,
)

config_app = cyclopts.App(name="config", help="Manage default settings", sort_key=1)
app.command(config_app)


@app.meta.default
def launcher(
    *tokens: Annotated[str, Parameter(show=False, allow_leading_hyphen=True)],
    verbose: Annotated[bool, Parameter(name=["--verbose", "-v"])] = False,
):
    """Create a SOCKS proxy through AWS EC2 in any region.

    :param verbose: Enable verbose logging
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    return app(tokens)


@app.command(name="start")
def start_proxy(
    *,
    region: str | None = None,
    port: int | None = None,
    instance_type: str | None = None,
    no_system_proxy: bool = False,
):
    """Start a proxy in the specified AWS region.

    :param region: AWS region, e.g. ap-northeast-1 (default: config default_region)
    :param port: Local port for the SOCKS proxy (default: 1080)
    :param instance_type: EC2 instance type (default: t4g.nano for ARM regions, t3.nano otherwise)
    :param no_system_proxy: Skip macOS system proxy configuration
    """
    session = Orchestrator().start(
        region=region,
        port=port,
        instance_type=instance_type,
        no_system_proxy=no_system_proxy,
    )

    print()
    print("[green]Proxy is ready![/green]")
    print()
    print(f"  Region:    {region_name(session['region'])} ({session['region']})")
    print(f"  Public IP: {session['public_ip']}")
    print(f"  SOCKS:     localhost:{session['local_port']}")
    print()
    print("  To stop:   region-proxy stop")
    print()


@app.command(name="stop")
def stop_proxy(*, force: bool = False):
    """Stop the running proxy and clean up AWS resources.

    :param force: Continue cleanup even if some operations fail
    """
    result = Orchestrator().stop(force=force)
    if result.clean:
        print("[green]Proxy stopped and cleaned up![/green]")
    else:
        warn(f"Proxy stopped with {len(result.failures)} failed step(s):")
        for label, exc in result.failures:
            warn(f"  {label}: {exc}")
        warn("Run 'region-proxy cleanup' to remove any remaining AWS resources")


@app.command(name="status")
def show_status():
    """Show the current proxy status."""
    status = Orchestrator().status()
    if status is None:
        print("No active proxy.")
        return

    session = status["session"]
    hours, remainder = divmod(status["uptime_seconds"], 3600)
    minutes = remainder // 60
    tunnel = "[green]Running[/green]" if status["tunnel_running"] else "[red]Not running[/red]"
    proxy = "[green]Enabled[/green]" if status["system_proxy_enabled"] else "[red]Disabled[/red]"

    print()
    print("Proxy Status")
    print()
    print(f"  Region:       {region_name(session['region'])} ({session['region']})")
    print(f"  Instance:     {session['instance_id']}")
    print(f"  Public IP:    {session['public_ip']}")
    print(f"  SOCKS:        localhost:{session['local_port']}")
    print(f"  SSH tunnel:   {tunnel}")
    print(f"  System proxy: {proxy}")
    print(f"  Running for:  {hours}h {minutes}m")
    print()


@app.command(name="list-regions")
def list_regions(*, detailed: bool = False):
    """List available AWS regions.

    :param detailed: Show the default instance type for each region
    """
    print()
    print("Available AWS Regions:")
    print()
    if detailed:
        print(f"  {'CODE'.ljust(16)}  {'NAME'.ljust(14)}  DEFAULT INSTANCE")
        print(f"  {'-' * 16}  {'-' * 14}  {'-' * 16}")
        for r in REGIONS:
            print(f"  {r['code'].ljust(16)}  {r['name'].ljust(14)}  {default_instance_type(r)}")
    else:
        for r in REGIONS:
            print(f"  {r['code']} ({r['name']})")
    print()


@app.command(name="cleanup")
def cleanup_resources(*, region: str | None = None):
    """Clean up orphaned AWS resources left by interrupted runs.

    :param region: Region to clean up (default: all regions)
    """
    if region:
        require_region(region)
        regions = [region]
    else:
        regions = [r["code"] for r in REGIONS]

    session = SessionStore().load()
    if session:
        log(f"Keeping resources of the active proxy in '{session['region']}'")

    results = Reconciler(session=session).sweep(regions)
    cleaned = sum(r["cleaned"] for r in results)
    failed = sum(r["failed"] for r in results)

    if cleaned == 0 and failed == 0:
        print("No orphaned resources found.")
        return
    print()
    print(f"Cleaned up {cleaned} resource(s).")
    if failed:
        warn(f"{failed} resource(s) could not be cleaned up; run cleanup again later")


@config_app.command(name="show")
def config_show():
    """Show current default settings."""
    prefs = load_preferences()
    print()
    print("Configuration")
    print()
    if not prefs:
        print("  No configuration set.")
        print()
        print("  Set defaults with:")
        print("    region-proxy config set-region <REGION>")
        print("    region-proxy config set-port <PORT>")
    else:
        if "default_region" in prefs:
            code = prefs["default_region"]
            print(f"  Default region:        {code} ({region_name(code)})")
        if "default_port" in prefs:
            print(f"  Default port:          {prefs['default_port']}")
        if "default_instance_type" in prefs:
            print(f"  Default instance type: {prefs['default_instance_type']}")
        if "no_system_proxy" in prefs:
            print(f"  Skip system proxy:     {prefs['no_system_proxy']}")
    print()
    print(f"  Config file: {config_file_path()}")
    print()


@config_app.command(name="set-region")
def config_set_region(region: str):
    """Set the default region.

    :param region: AWS region code
    """
    require_region(region)
    prefs = load_preferences()
    prefs["default_region"] = region
    save_preferences(prefs)
    print(f"Default region set to: {region} ({region_name(region)})")


@config_app.command(name="set-port")
def config_set_port(port: int):
    """Set the default local SOCKS port.

    :param port: Port number (1-65535)
    """
    if not 0 < port < 65536:
        error("Port must be between 1 and 65535")
    prefs = load_preferences()
    prefs["default_port"] = port
    save_preferences(prefs)
    print(f"Default port set to: {port}")


@config_app.command(name="set-instance-type")
def config_set_instance_type(instance_type: str):
    """Set the default EC2 instance type.

    :param instance_type: e.g. t4g.micro
    """
    prefs = load_preferences()
    prefs["default_instance_type"] = instance_type
    save_preferences(prefs)
    print(f"Default instance type set to: {instance_type}")


@config_app.command(name="set-no-system-proxy")
def config_set_no_system_proxy(value: str):
    """Skip system proxy configuration by default.

    :param value: true or false
    """
    try:
        skip = parse_bool(value)
    except ValueError as e:
        error(str(e))
    prefs = load_preferences()
    prefs["no_system_proxy"] = skip
    save_preferences(prefs)
    if skip:
        print("System proxy configuration will be skipped by default")
    else:
        print("System proxy will be configured by default")


@config_app.command(name="unset")
def config_unset(option: str):
    """Clear one default setting.

    :param option: region, port, instance-type or no-system-proxy
    """
    key = UNSET_OPTIONS.get(option)
    if key is None:
        error(f"Unknown option: {option}. Valid options: {', '.join(UNSET_OPTIONS)}")
    prefs = load_preferences()
    prefs.pop(key, None)
    save_preferences(prefs)
    print(f"Default {option} cleared")


@config_app.command(name="reset")
def config_reset():
    """Delete all default settings."""
    path = config_file_path()
    if path.exists():
        path.unlink()
        print("Configuration reset to defaults")
    else:
        print("No configuration file to reset.")


def main():
    try:
        app.meta()
    except RegionProxyError as e:
        error(str(e))
    except KeyboardInterrupt:
        error("Interrupted")


if __name__ == "__main__":
    main()
