"""PlunderMachine reconciler: drives one resource toward provisioned/ready.

States reported for one invocation:
  not_found    resource is gone; nothing to do
  load_failed  the store could not return the resource (error set)
  unowned      no owning Machine yet
  unclustered  Cluster or PlunderCluster not resolvable yet
  provisioning protocol ran and failed (error set)
  ready        providerID set, either just now or on an earlier run
  released     deletion requested, finalizer removed

Provisioning protocol, strictly in order:
  lease select -> submit deployment -> submit verification -> poll -> persist

Once the owner chain resolves, every exit commits the pending mutation set
(finalizer, providerID, ready) through the store, including failures and
cancellation. Failures abort the attempt and are returned on the result;
retry scheduling belongs to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from ..errors import ReconcileError, ResourceNotFound
from ..observability.logging import reconcile_context
from ..observability.metrics import (
    RECONCILE_ERRORS_TOTAL,
    COMPLETION_POLL_ATTEMPTS,
    RECONCILE_DURATION_SECONDS,
    RECONCILE_TOTAL,
)
from ..protocols import ProvisioningClient, ResourceStore
from ..resources.models import (
    MACHINE_FINALIZER,
    ObjectRef,
    PlunderMachine,
    provider_id_for,
)
from ..resources.owner_chain import OwnerChain, Unready, resolve_owner_chain
from ..resources.patch import pending_patch
from ..settings import ControllerSettings
from .completion import CompletionPoller
from .deployment import build_deployment_request, submit_deployment
from .leases import acquire_lease

logger = logging.getLogger(__name__)

STATE_NOT_FOUND = 'not_found'
STATE_LOAD_FAILED = 'load_failed'
STATE_UNOWNED = 'unowned'
STATE_UNCLUSTERED = 'unclustered'
STATE_PROVISIONING = 'provisioning'
STATE_READY = 'ready'
STATE_DELETING = 'deleting'
STATE_RELEASED = 'released'


# ── Result ───────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """Outcome of one reconcile invocation.

    ``requeue_after`` and ``error`` are independent: an unready resource
    asks for a requeue without an error, a failed attempt reports an error
    and leaves backoff to the caller.
    """

    state: str
    requeue_after: float | None = None
    error: ReconcileError | None = None
    resource: PlunderMachine | None = None
    mutations: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None


# ── Decision table ───────────────────────────────────────────────────


def decide(plunder_machine: PlunderMachine) -> str:
    """Branch for a PlunderMachine whose owner chain resolved.

    Deletion wins over the already-provisioned short-circuit.
    """
    if plunder_machine.deletion_requested:
        return STATE_DELETING
    if plunder_machine.provider_id:
        return STATE_READY
    return STATE_PROVISIONING


def ensure_finalizer(plunder_machine: PlunderMachine) -> None:
    if MACHINE_FINALIZER not in plunder_machine.finalizers:
        plunder_machine.finalizers.append(MACHINE_FINALIZER)


def remove_finalizer(plunder_machine: PlunderMachine) -> None:
    plunder_machine.finalizers = [
        f for f in plunder_machine.finalizers if f != MACHINE_FINALIZER
    ]


# ── Reconciler ───────────────────────────────────────────────────────


class MachineReconciler:
    """Reconciles PlunderMachine resources against the Plunder backend.

    Not reentrant for a single resource: the delivery layer must serialise
    invocations per identity. Different identities may run concurrently.
    """

    def __init__(
        self,
        *,
        store: ResourceStore,
        client: ProvisioningClient,
        settings: ControllerSettings | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        utcnow: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._client = client
        self._settings = settings or ControllerSettings()
        self._rng = rng
        self._sleep = sleep
        self._clock = clock
        self._utcnow = utcnow or _now

    async def reconcile(self, ref: ObjectRef) -> ReconcileResult:
        """Run one reconcile for ``ref`` and return its outcome.

        ReconcileErrors are returned on the result. Anything else raised by
        a collaborator (and cancellation) propagates after the pending
        patch has been committed.
        """
        started = time.perf_counter()
        try:
            with reconcile_context(str(ref)):
                result = await self._reconcile(ref)
        finally:
            RECONCILE_DURATION_SECONDS.observe(time.perf_counter() - started)

        RECONCILE_TOTAL.labels(
            state=result.state,
            outcome='success' if result.ok else 'error',
        ).inc()
        if result.error is not None:
            RECONCILE_ERRORS_TOTAL.labels(code=result.error.code).inc()
        return result

    async def _reconcile(self, ref: ObjectRef) -> ReconcileResult:
        try:
            plunder_machine = await self._store.get_plunder_machine(ref)
        except ResourceNotFound:
            logger.debug('PlunderMachine %s not found', ref)
            return ReconcileResult(state=STATE_NOT_FOUND)
        except ReconcileError as exc:
            return ReconcileResult(state=STATE_LOAD_FAILED, error=exc)

        chain = await resolve_owner_chain(self._store, plunder_machine)
        if isinstance(chain, Unready):
            logger.info(chain.reason, extra={'reconcile_state': chain.state})
            return ReconcileResult(
                state=chain.state,
                requeue_after=self._settings.unready_requeue_seconds,
                resource=plunder_machine,
            )

        async with pending_patch(self._store, plunder_machine) as patch:
            state = decide(plunder_machine)
            error: ReconcileError | None = None
            if state == STATE_DELETING:
                state = self._reconcile_delete(plunder_machine)
            elif state == STATE_READY:
                self._reconcile_ready(plunder_machine)
            else:
                state, error = await self._reconcile_provision(
                    plunder_machine, chain,
                )

        return ReconcileResult(
            state=state,
            error=error or patch.error,
            resource=plunder_machine,
            mutations=patch.mutations,
        )

    def _reconcile_delete(self, plunder_machine: PlunderMachine) -> str:
        logger.info('Deleting Machine')
        remove_finalizer(plunder_machine)
        return STATE_RELEASED

    def _reconcile_ready(self, plunder_machine: PlunderMachine) -> None:
        ensure_finalizer(plunder_machine)
        plunder_machine.ready = True

    async def _reconcile_provision(
        self,
        plunder_machine: PlunderMachine,
        chain: OwnerChain,
    ) -> tuple[str, ReconcileError | None]:
        logger.info('Reconciling Machine')
        ensure_finalizer(plunder_machine)

        machine = chain.machine
        if machine.bootstrap_data is None:
            logger.info("The Plunder Provider currently doesn't require bootstrap data")

        settings = self._settings
        try:
            lease = await acquire_lease(
                self._client,
                now=self._utcnow(),
                freshness=timedelta(seconds=settings.lease_freshness_seconds),
            )
            request = build_deployment_request(
                lease.nic,
                machine.role,
                ip_address=settings.deployment_ip_address,
                config_name=settings.deployment_config_name,
                rng=self._rng,
                suffix_length=settings.hostname_suffix_length,
                charset=settings.hostname_charset,
            )
            logger.info(
                'Provisioning %s node %s',
                machine.role,
                machine.name,
                extra={'machine': machine.name, 'hostname': request.hostname},
            )
            await submit_deployment(self._client, request)

            poller = CompletionPoller(
                self._client,
                interval_seconds=settings.poll_interval_seconds,
                max_duration_seconds=settings.poll_max_duration_seconds,
                max_attempts=settings.poll_max_attempts,
                command=settings.verification_command,
                sleep=self._sleep,
                clock=self._clock,
            )
            completion = await poller.run(request.ip_address)
        except ReconcileError as exc:
            logger.warning(
                'Provisioning attempt failed: %s',
                exc,
                extra={'error_code': exc.code, 'machine': machine.name},
            )
            return STATE_PROVISIONING, exc

        COMPLETION_POLL_ATTEMPTS.observe(completion.attempts)
        plunder_machine.provider_id = provider_id_for(lease.nic)
        plunder_machine.ready = True
        return STATE_READY, None


def _now() -> datetime:
    """UTC-aware now for lease freshness checks."""
    return datetime.now(timezone.utc)
