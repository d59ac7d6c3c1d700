"""Pending mutation set committed on every exit from a reconcile.

``pending_patch`` snapshots the PlunderMachine's mutable fields on entry
and, on exit (normal return, raised error, or cancellation), diffs the
object against that snapshot and writes only the changed fields back
through the store. No diff means no store call.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from ..errors import PatchError
from ..protocols import ResourceStore
from .models import PlunderMachine

logger = logging.getLogger(__name__)


@dataclass
class PendingPatch:
    resource: PlunderMachine
    original: dict[str, Any]
    mutations: dict[str, Any] = field(default_factory=dict)
    error: PatchError | None = None

    def diff(self) -> dict[str, Any]:
        current = self.resource.snapshot()
        return {
            key: value
            for key, value in current.items()
            if self.original.get(key) != value
        }


@asynccontextmanager
async def pending_patch(
    store: ResourceStore,
    resource: PlunderMachine,
) -> AsyncIterator[PendingPatch]:
    """Yield a PendingPatch and commit its diff when the block exits.

    Commit failures are recorded on ``PendingPatch.error`` rather than
    raised, so they never mask the error that ended the block.
    """
    patch = PendingPatch(resource=resource, original=resource.snapshot())
    try:
        yield patch
    finally:
        patch.mutations = patch.diff()
        if patch.mutations:
            try:
                await store.patch_plunder_machine(resource.ref, patch.mutations)
            except Exception as exc:
                logger.error(
                    'failed to patch PlunderMachine %s',
                    resource.ref,
                    extra={'plundermachine': str(resource.ref)},
                    exc_info=True,
                )
                patch.error = PatchError(f'failed to patch PlunderMachine: {exc}')
