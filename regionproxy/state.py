"""Persisted session state: state.json, per-session key files and the command lock."""

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .config import get_home_dir
from .errors import LocalIOError
from .types import SessionData

SESSION_FIELDS = (
    "instance_id",
    "region",
    "public_ip",
    "security_group_id",
    "key_pair_name",
    "key_file_path",
    "local_port",
    "tunnel_pid",
    "started_at",
)


def _write_private(path: Path, content: str) -> None:
    """Replace path with content atomically, readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except OSError:
        Path(tmp).unlink(missing_ok=True)
        raise


class SessionStore:
    """Single-record store whose file is the definition of "proxy running"."""

    def __init__(self, home: Path | None = None):
        self.home = home or get_home_dir()

    @property
    def state_file(self) -> Path:
        return self.home / "state.json"

    @property
    def keys_dir(self) -> Path:
        return self.home / "keys"

    @property
    def lock_file(self) -> Path:
        return self.home / ".lock"

    def load(self) -> SessionData | None:
        """Load the session; a missing file means no session.

        :raises LocalIOError: If the file exists but is unreadable or malformed
        """
        if not self.state_file.exists():
            return None
        try:
            data = json.loads(self.state_file.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise LocalIOError(f"Could not read state file '{self.state_file}': {e}") from e
        missing = [f for f in SESSION_FIELDS if f not in data]
        if missing:
            raise LocalIOError(
                f"State file '{self.state_file}' is missing fields: {', '.join(missing)}"
            )
        return {f: data[f] for f in SESSION_FIELDS}

    def save(self, session: SessionData) -> None:
        try:
            _write_private(self.state_file, json.dumps(session, indent=2))
        except OSError as e:
            raise LocalIOError(f"Could not write state file '{self.state_file}': {e}") from e

    def delete(self) -> None:
        try:
            self.state_file.unlink(missing_ok=True)
        except OSError as e:
            raise LocalIOError(f"Could not delete state file '{self.state_file}': {e}") from e

    def is_running(self) -> bool:
        return self.load() is not None

    def write_key(self, key_name: str, material: str) -> Path:
        """Persist private key material as keys/<key_name>.pem (mode 0600)."""
        path = self.keys_dir / f"{key_name}.pem"
        try:
            _write_private(path, material)
        except OSError as e:
            raise LocalIOError(f"Could not write key file '{path}': {e}") from e
        return path

    def remove_key(self, path: str | Path) -> None:
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            raise LocalIOError(f"Could not remove key file '{path}': {e}") from e

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold an exclusive lock for a mutating command.

        :raises LocalIOError: If another region-proxy process holds the lock
        """
        self.home.mkdir(parents=True, exist_ok=True)
        with open(self.lock_file, "a+") as lock_file:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError as e:
                raise LocalIOError(
                    "Another region-proxy command is in progress "
                    f"(lock held on '{self.lock_file}')"
                ) from e
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
