"""Region catalogue, user preferences and the per-user data directory."""

import json
import os
from pathlib import Path

from dotenv import load_dotenv

from .errors import LocalIOError, NotFoundError
from .types import Architecture, Preferences, RegionInfo

DEFAULT_PORT = 1080
SSH_USER = "ec2-user"

PREFERENCE_KEYS = (
    "default_region",
    "default_port",
    "default_instance_type",
    "no_system_proxy",
)

# Unset option names accepted by `config unset`, mapped to preference keys
UNSET_OPTIONS = {
    "region": "default_region",
    "port": "default_port",
    "instance-type": "default_instance_type",
    "no-system-proxy": "no_system_proxy",
}

REGIONS: list[RegionInfo] = [
    # Asia Pacific
    {"code": "ap-northeast-1", "name": "Tokyo", "supports_arm": True},
    {"code": "ap-northeast-2", "name": "Seoul", "supports_arm": True},
    {"code": "ap-northeast-3", "name": "Osaka", "supports_arm": True},
    {"code": "ap-southeast-1", "name": "Singapore", "supports_arm": True},
    {"code": "ap-southeast-2", "name": "Sydney", "supports_arm": True},
    {"code": "ap-south-1", "name": "Mumbai", "supports_arm": True},
    # US
    {"code": "us-east-1", "name": "N. Virginia", "supports_arm": True},
    {"code": "us-east-2", "name": "Ohio", "supports_arm": True},
    {"code": "us-west-1", "name": "N. California", "supports_arm": True},
    {"code": "us-west-2", "name": "Oregon", "supports_arm": True},
    # Europe
    {"code": "eu-west-1", "name": "Ireland", "supports_arm": True},
    {"code": "eu-west-2", "name": "London", "supports_arm": True},
    {"code": "eu-west-3", "name": "Paris", "supports_arm": True},
    {"code": "eu-central-1", "name": "Frankfurt", "supports_arm": True},
    {"code": "eu-north-1", "name": "Stockholm", "supports_arm": True},
    # South America
    {"code": "sa-east-1", "name": "São Paulo", "supports_arm": True},
    # Canada
    {"code": "ca-central-1", "name": "Canada", "supports_arm": True},
]

ARM_INSTANCE_PREFIXES = ("t4g", "m7g", "c7g")


def find_region(code: str) -> RegionInfo | None:
    return next((r for r in REGIONS if r["code"] == code), None)


def require_region(code: str) -> RegionInfo:
    """:raises NotFoundError: If the region is not in the catalogue"""
    region = find_region(code)
    if region is None:
        raise NotFoundError(
            f"Unknown region: '{code}'. Use 'region-proxy list-regions' to see available regions."
        )
    return region


def region_name(code: str) -> str:
    region = find_region(code)
    return region["name"] if region else "Unknown"


def default_instance_type(region: RegionInfo) -> str:
    return "t4g.nano" if region["supports_arm"] else "t3.nano"


def instance_architecture(instance_type: str) -> Architecture:
    """Classify an instance type as ARM or x86 by its family prefix.

    This is a name heuristic over a short list of Graviton families; it is
    the only place that makes the decision.
    """
    if instance_type.startswith(ARM_INSTANCE_PREFIXES):
        return "arm64"
    return "x86_64"


def get_home_dir() -> Path:
    """Per-user data directory (default ~/.region-proxy, override REGION_PROXY_HOME)."""
    load_dotenv()
    override = os.getenv("REGION_PROXY_HOME")
    return Path(override).expanduser() if override else Path.home() / ".region-proxy"


def config_file_path(home: Path | None = None) -> Path:
    return (home or get_home_dir()) / "config.json"


def load_preferences(path: Path | None = None) -> Preferences:
    """Load preferences; a missing file means no preferences set.

    :raises LocalIOError: If the file exists but cannot be parsed
    """
    path = path or config_file_path()
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise LocalIOError(f"Could not read preferences '{path}': {e}") from e
    if not isinstance(data, dict):
        raise LocalIOError(f"Preferences '{path}' must be a JSON object")
    return {k: data[k] for k in PREFERENCE_KEYS if data.get(k) is not None}


def save_preferences(prefs: Preferences, path: Path | None = None) -> None:
    path = path or config_file_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {k: prefs[k] for k in PREFERENCE_KEYS if prefs.get(k) is not None}
    path.write_text(json.dumps(data, indent=2))


def parse_bool(value: str) -> bool:
    """Parse a yes/no style flag value.

    :raises ValueError: If value is not a recognised boolean
    """
    lowered = value.strip().lower()
    if lowered in ("true", "1", "yes"):
        return True
    if lowered in ("false", "0", "no"):
        return False
    raise ValueError(f"Invalid value: '{value}'. Use 'true' or 'false'")
