"""Type definitions for region-proxy."""

from typing import Literal, TypedDict

Architecture = Literal["arm64", "x86_64"]


class SessionData(TypedDict):
    """Active proxy session stored in state.json."""

    instance_id: str
    region: str
    public_ip: str
    security_group_id: str
    key_pair_name: str
    key_file_path: str
    local_port: int
    tunnel_pid: int | None
    started_at: str  # ISO 8601, UTC


class OrphanSet(TypedDict):
    """Tagged backend resources found by a reconciliation query."""

    instance_ids: list[str]
    security_group_ids: list[str]
    key_pair_names: list[str]


class Preferences(TypedDict, total=False):
    """User preferences stored in config.json."""

    default_region: str
    default_port: int
    default_instance_type: str
    no_system_proxy: bool


class RegionInfo(TypedDict):
    code: str
    name: str
    supports_arm: bool


class SessionStatus(TypedDict):
    """Recorded session plus live probes."""

    session: SessionData
    tunnel_running: bool
    system_proxy_enabled: bool
    uptime_seconds: int


class CleanupResult(TypedDict):
    """Outcome of sweeping one region."""

    region: str
    cleaned: int
    failed: int


def orphan_set_is_empty(orphans: OrphanSet) -> bool:
    return not (
        orphans["instance_ids"]
        or orphans["security_group_ids"]
        or orphans["key_pair_names"]
    )
