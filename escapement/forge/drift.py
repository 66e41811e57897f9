"""Drift detection: compare stored records with what the providers report."""

import asyncio
import logging
from typing import Any

from ..errors import DriftError
from ..models import ResourceKey, StateRecord
from ..providers.base import ProviderRegistry
from .lock import LockManager
from .state import StateStore

logger = logging.getLogger(__name__)


def compare_attributes(stored: dict[str, Any], remote: dict[str, Any]) -> dict[str, tuple[Any, Any]]:
    """Differences on the attributes both sides know about: ``{name: (stored, remote)}``."""
    return {
        name: (stored[name], remote[name])
        for name in sorted(set(stored) & set(remote))
        if stored[name] != remote[name]
    }


async def _read_remote(registry: ProviderRegistry, record: StateRecord, timeout: float) -> dict[str, Any] | None:
    adapter = registry.adapter_for(record.type)
    return await asyncio.wait_for(adapter.read(record.provider_id), timeout=timeout)


async def refresh(
    store: StateStore,
    registry: ProviderRegistry,
    lock: LockManager | None = None,
    owner_id: str | None = None,
    timeout: float = 300.0,
) -> list[DriftError]:
    """
    Read every stored resource back from its provider and flag divergence.

    A resource that no longer exists remotely is marked tainted (the next plan
    re-creates it). One whose attributes changed is marked drifted, with the
    observed attributes kept for display; the next plan updates it back. Drift
    is reported, never silently accepted into state.

    The caller must hold the exclusive lock when ``lock`` is given.

    Returns:
        One DriftError per diverged resource
    """
    findings: list[DriftError] = []
    records: dict[ResourceKey, StateRecord] = store.records()

    for key in sorted(records):
        record = records[key]
        if record.provider_id is None or record.tainted or key.type not in registry:
            continue

        try:
            remote = await _read_remote(registry, record, timeout)
        except Exception as e:  # one unreadable resource must not abort the refresh
            logger.warning(f"{key}: could not refresh: {e or type(e).__name__}")
            continue

        if remote is None:
            finding = DriftError(str(key), missing=True)
            logger.warning(str(finding))
            if lock is not None and owner_id is not None:
                lock.verify(owner_id)
            store.mark_tainted(key)
            findings.append(finding)
            continue

        differences = compare_attributes(record.attributes, remote)
        if not differences:
            continue

        finding = DriftError(str(key), differences=differences)
        logger.warning(str(finding))
        if lock is not None and owner_id is not None:
            lock.verify(owner_id)
        store.mark_drifted(key, remote)
        findings.append(finding)

    logger.info(f"Refreshed {len(records)} resources, {len(findings)} drifted")
    return findings
