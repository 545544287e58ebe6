"""Start, stop and status for the single proxy session.

State is rebuilt from the SessionStore on every call. Nothing is cached
between CLI invocations: a persisted session means Running, no session means
Idle.

start provisions in order image -> security group -> key pair -> instance,
then connects the tunnel, and only then saves the session. Any failure (or
Ctrl-C) before the save rolls back whatever was created, so a failed start
never needs manual cleanup.

stop runs one list of teardown steps in either strict or forced mode. Strict
stops at the first failure and keeps the session so stop can be retried.
Forced logs each failure, carries on, and always deletes the session.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from .config import (
    DEFAULT_PORT,
    SSH_USER,
    config_file_path,
    default_instance_type,
    instance_architecture,
    load_preferences,
    require_region,
)
from .errors import (
    AlreadyRunningError,
    NotFoundError,
    NotRunningError,
    RegionProxyError,
    WaitTimeoutError,
)
from .providers import ResourceBackend, detect_ssh_cidr, get_backend
from .state import SessionStore
from .sysproxy import SystemProxy, get_system_proxy
from .tunnel import SSHTunnel
from .types import Preferences, SessionData, SessionStatus
from .utils import debug, log, warn

SSH_PORT = 22


@dataclass
class _Provisioned:
    """Handles created so far by a start attempt, for rollback."""

    security_group_id: str | None = None
    key_pair_name: str | None = None
    key_file_path: Path | None = None
    instance_id: str | None = None
    tunnel_pid: int | None = None
    system_proxy_enabled: bool = False


@dataclass
class StopResult:
    """Steps that failed during a forced stop (always empty after a strict stop)."""

    failures: list[tuple[str, Exception]] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.failures


class Orchestrator:
    def __init__(
        self,
        store: SessionStore | None = None,
        *,
        backend_factory: Callable[[str], ResourceBackend] = get_backend,
        tunnel: SSHTunnel | None = None,
        system_proxy: SystemProxy | None = None,
        preferences: Preferences | None = None,
        ssh_cidr: Callable[[], str] = detect_ssh_cidr,
    ):
        self.store = store or SessionStore()
        self.backend_factory = backend_factory
        self.tunnel = tunnel or SSHTunnel()
        self.system_proxy = system_proxy or get_system_proxy()
        self.preferences = preferences
        self.ssh_cidr = ssh_cidr

    def start(
        self,
        region: str | None = None,
        port: int | None = None,
        instance_type: str | None = None,
        no_system_proxy: bool = False,
    ) -> SessionData:
        """Provision an instance, open the tunnel and persist the session.

        :raises AlreadyRunningError: If a session exists (nothing is created)
        :raises NotFoundError: If no region is given or the region is unknown
        """
        with self.store.lock():
            if self.store.is_running():
                raise AlreadyRunningError(
                    "A proxy is already running. Use 'region-proxy stop' first."
                )

            prefs = self.preferences
            if prefs is None:
                prefs = load_preferences(config_file_path(self.store.home))
            if region is None:
                region = prefs.get("default_region")
                if region is None:
                    raise NotFoundError(
                        "No region specified. Use --region or set a default with:\n"
                        "  region-proxy config set-region <REGION>\n\n"
                        "Use 'region-proxy list-regions' to see available regions."
                    )
                log(f"Using default region from config: {region}")
            region_info = require_region(region)
            port = port or prefs.get("default_port") or DEFAULT_PORT
            instance_type = (
                instance_type
                or prefs.get("default_instance_type")
                or default_instance_type(region_info)
            )
            enable_system_proxy = not no_system_proxy and not prefs.get("no_system_proxy", False)
            arch = instance_architecture(instance_type)

            log(f"Starting proxy in {region_info['name']} ({region})")
            log(f"  Instance type: {instance_type} ({arch})")
            log(f"  Local port: {port}")

            backend = self.backend_factory(region)
            backend.validate_auth()
            image_id = backend.find_latest_image(arch)

            created = _Provisioned()
            try:
                session = self._provision(
                    backend, created, region, image_id, instance_type, port, enable_system_proxy
                )
                self.store.save(session)
            except (Exception, KeyboardInterrupt) as e:
                warn(f"Start failed: {e}")
                self._rollback(backend, created)
                raise
            return session

    def _provision(
        self,
        backend: ResourceBackend,
        created: _Provisioned,
        region: str,
        image_id: str,
        instance_type: str,
        port: int,
        enable_system_proxy: bool,
    ) -> SessionData:
        created.security_group_id = backend.create_security_group()
        backend.authorize_ingress(created.security_group_id, SSH_PORT, self.ssh_cidr())

        key_name, key_material = backend.create_key_pair()
        created.key_pair_name = key_name
        created.key_file_path = self.store.write_key(key_name, key_material)

        created.instance_id = backend.launch_instance(
            image_id, instance_type, created.security_group_id, key_name
        )
        public_ip = backend.wait_until_running(created.instance_id)

        created.tunnel_pid = self.tunnel.start(public_ip, created.key_file_path, port, SSH_USER)
        self.tunnel.wait_ready(port)

        if enable_system_proxy:
            log("Configuring system proxy...")
            self.system_proxy.enable(port)
            created.system_proxy_enabled = True

        return {
            "instance_id": created.instance_id,
            "region": region,
            "public_ip": public_ip,
            "security_group_id": created.security_group_id,
            "key_pair_name": key_name,
            "key_file_path": str(created.key_file_path),
            "local_port": port,
            "tunnel_pid": created.tunnel_pid,
            "started_at": datetime.now(timezone.utc).isoformat(),
        }

    def _rollback(self, backend: ResourceBackend, created: _Provisioned) -> None:
        """Best-effort reverse of a failed start; individual failures are only logged."""
        warn("Cleaning up resources...")
        steps: list[tuple[str, Callable[[], None]]] = []
        if created.system_proxy_enabled:
            steps.append(("disable system proxy", self.system_proxy.disable))
        if created.tunnel_pid is not None:
            steps.append(("stop SSH tunnel", lambda: self.tunnel.stop(created.tunnel_pid)))
        if created.instance_id:
            steps.append(("terminate instance", lambda: _terminate(backend, created.instance_id)))
        if created.security_group_id:
            steps.append(
                ("delete security group", lambda: backend.delete_security_group(created.security_group_id))
            )
        if created.key_pair_name:
            steps.append(("delete key pair", lambda: backend.delete_key_pair(created.key_pair_name)))
        if created.key_file_path:
            steps.append(("remove key file", lambda: self.store.remove_key(created.key_file_path)))

        for label, step in steps:
            try:
                step()
            except Exception as e:
                warn(f"Rollback could not {label}: {e}")

    def stop(self, force: bool = False) -> StopResult:
        """Tear down the session's resources and delete the session record.

        :param force: Continue past failed steps and always clear the session
        :raises NotRunningError: If there is no session and force is not set
        """
        with self.store.lock():
            session = self.store.load()
            if session is None:
                if force:
                    warn("No active proxy found, but --force was specified. Skipping.")
                    return StopResult()
                raise NotRunningError("No active proxy found. Nothing to stop.")

            log("Stopping proxy...")
            completed = False
            try:
                result = self._teardown(session, force)
                completed = True
            finally:
                if completed or force:
                    self.store.delete()
            return result

    def _teardown(self, session: SessionData, force: bool) -> StopResult:
        backends: list[ResourceBackend] = []

        def backend() -> ResourceBackend:
            # Built on first use so a failure to build it is a failed step
            if not backends:
                backends.append(self.backend_factory(session["region"]))
            return backends[0]

        steps: list[tuple[str, Callable[[], None]]] = [
            ("Disabling system proxy", self.system_proxy.disable),
            ("Stopping SSH tunnel", lambda: self._stop_tunnel(session)),
            ("Terminating EC2 instance", lambda: _terminate(backend(), session["instance_id"])),
            (
                "Deleting security group",
                lambda: backend().delete_security_group(session["security_group_id"]),
            ),
            ("Deleting key pair", lambda: backend().delete_key_pair(session["key_pair_name"])),
            ("Removing key file", lambda: self.store.remove_key(session["key_file_path"])),
        ]

        result = StopResult()
        for label, step in steps:
            log(f"{label}...")
            try:
                step()
            except Exception as e:
                if not force:
                    raise
                warn(f"{label} failed: {e}")
                result.failures.append((label, e))
        return result

    def _stop_tunnel(self, session: SessionData) -> None:
        pid = session["tunnel_pid"]
        port = session["local_port"]
        if pid is None:
            self.tunnel.stop_by_port(port)
            return
        try:
            self.tunnel.stop(pid)
        except RegionProxyError as e:
            warn(f"Could not stop SSH tunnel by PID {pid} ({e}), trying port {port}")
            self.tunnel.stop_by_port(port)

    def status(self) -> SessionStatus | None:
        """Recorded session plus live tunnel and system proxy probes.

        :return: None when no session exists
        """
        session = self.store.load()
        if session is None:
            return None

        try:
            tunnel_running = self.tunnel.find_by_port(session["local_port"]) is not None
        except RegionProxyError as e:
            warn(f"Could not check SSH tunnel: {e}")
            tunnel_running = False
        try:
            proxy_enabled = self.system_proxy.is_enabled()
        except RegionProxyError as e:
            debug(f"Could not check system proxy: {e}")
            proxy_enabled = False

        started = datetime.fromisoformat(session["started_at"])
        uptime = datetime.now(timezone.utc) - started
        return {
            "session": session,
            "tunnel_running": tunnel_running,
            "system_proxy_enabled": proxy_enabled,
            "uptime_seconds": max(0, int(uptime.total_seconds())),
        }


def _terminate(backend: ResourceBackend, instance_id: str) -> None:
    """Request termination, then confirm it; a slow confirmation is only reported."""
    backend.terminate_instance(instance_id)
    try:
        backend.wait_until_terminated(instance_id)
    except WaitTimeoutError as e:
        warn(f"{e}; continuing")
