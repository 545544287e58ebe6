"""Sweep regions for tagged resources that no session accounts for."""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from .errors import WaitTimeoutError
from .providers import ResourceBackend, get_backend
from .types import CleanupResult, OrphanSet, SessionData, orphan_set_is_empty
from .utils import log, warn


def exclude_session(orphans: OrphanSet, session: SessionData | None, region: str) -> OrphanSet:
    """Drop the active session's own resources from a tagged-resource set."""
    if session is None or session["region"] != region:
        return orphans
    return {
        "instance_ids": [i for i in orphans["instance_ids"] if i != session["instance_id"]],
        "security_group_ids": [
            g for g in orphans["security_group_ids"] if g != session["security_group_id"]
        ],
        "key_pair_names": [k for k in orphans["key_pair_names"] if k != session["key_pair_name"]],
    }


class Reconciler:
    """Deletes orphans region by region; failures are counted, never raised."""

    def __init__(
        self,
        backend_factory: Callable[[str], ResourceBackend] = get_backend,
        *,
        session: SessionData | None = None,
        max_workers: int = 8,
    ):
        self.backend_factory = backend_factory
        self.session = session
        self.max_workers = max_workers

    def sweep(self, regions: list[str]) -> list[CleanupResult]:
        """Sweep regions concurrently; results keep the order of regions."""
        if len(regions) <= 1:
            return [self.sweep_region(r) for r in regions]
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(regions))) as executor:
            return list(executor.map(self.sweep_region, regions))

    def sweep_region(self, region: str) -> CleanupResult:
        result: CleanupResult = {"region": region, "cleaned": 0, "failed": 0}
        log(f"Checking region: {region}")
        try:
            backend = self.backend_factory(region)
            orphans = exclude_session(backend.find_tagged_resources(), self.session, region)
        except Exception as e:
            warn(f"Could not list resources in {region}: {e}")
            result["failed"] += 1
            return result

        if orphan_set_is_empty(orphans):
            return result

        log(f"Found orphaned resources in {region}")

        def attempt(label: str, resource_id: str, action: Callable[[str], None]) -> None:
            log(f"  {label} {resource_id}")
            try:
                action(resource_id)
            except Exception as e:
                warn(f"{label} {resource_id} failed: {e}")
                result["failed"] += 1
            else:
                result["cleaned"] += 1

        def terminate(instance_id: str) -> None:
            backend.terminate_instance(instance_id)
            try:
                backend.wait_until_terminated(instance_id)
            except WaitTimeoutError as e:
                warn(f"{e}; continuing")

        for instance_id in orphans["instance_ids"]:
            attempt("Terminating instance", instance_id, terminate)
        for group_id in orphans["security_group_ids"]:
            attempt("Deleting security group", group_id, backend.delete_security_group)
        for key_name in orphans["key_pair_names"]:
            attempt("Deleting key pair", key_name, backend.delete_key_pair)

        return result
