"""Tests for the PlunderMachine reconciler.

Drives MachineReconciler against the in-memory store and scripted backend
and asserts on persisted state and the exact backend calls issued.
"""

from __future__ import annotations

import asyncio
import random
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY

from plunder_provider.app.errors import BackendUnavailableError, ResourceNotFound
from plunder_provider.app.inmemory import InMemoryPlunderBackend, InMemoryResourceStore
from plunder_provider.app.providers.plunder_client import PlunderResponse
from plunder_provider.app.provisioning.reconciler import (
    STATE_DELETING,
    STATE_LOAD_FAILED,
    STATE_NOT_FOUND,
    STATE_PROVISIONING,
    STATE_READY,
    STATE_RELEASED,
    STATE_UNCLUSTERED,
    STATE_UNOWNED,
    MachineReconciler,
    decide,
)
from plunder_provider.app.resources.models import (
    MACHINE_FINALIZER,
    ObjectRef,
    OwnerReference,
    PlunderMachine,
)
from plunder_provider.app.settings import ControllerSettings

NOW = datetime(2026, 2, 13, 12, 0, 0, tzinfo=UTC)
MAC = '00:50:56:a5:11:20'
REF = ObjectRef('default', 'pm-0')


def _fresh_leases(*macs: str) -> list[dict]:
    expiry = (NOW - timedelta(minutes=2)).isoformat()
    return [{'Nic': mac, 'Expiry': expiry} for mac in macs]


async def _no_sleep(delay: float) -> None:
    return None


def _make_reconciler(
    store: InMemoryResourceStore,
    backend: InMemoryPlunderBackend,
    **settings_overrides,
) -> MachineReconciler:
    return MachineReconciler(
        store=store,
        client=backend,
        settings=ControllerSettings(**settings_overrides),
        rng=random.Random(0),
        sleep=_no_sleep,
        utcnow=lambda: NOW,
    )


# ── Test: decision table ───────────────────────────────────────────


def test_decide_deletion_wins_over_provider_id():
    pm = PlunderMachine(
        namespace='default',
        name='pm-0',
        provider_id=f'plunder://{MAC}',
        deletion_timestamp=NOW,
    )
    assert decide(pm) == STATE_DELETING


def test_decide_provider_id_means_ready():
    pm = PlunderMachine(namespace='default', name='pm-0', provider_id='plunder://x')
    assert decide(pm) == STATE_READY


def test_decide_fresh_machine_provisions():
    assert decide(PlunderMachine(namespace='default', name='pm-0')) == STATE_PROVISIONING


# ── Test: lookup and owner chain ───────────────────────────────────


@pytest.mark.asyncio
async def test_missing_resource_is_not_found(store, backend):
    result = await _make_reconciler(store, backend).reconcile(REF)

    assert result.state == STATE_NOT_FOUND
    assert result.ok
    assert backend.calls == []


@pytest.mark.asyncio
async def test_unowned_machine_requeues_without_changes(store, backend):
    store.add_plunder_machine(PlunderMachine(namespace='default', name='pm-0'))

    result = await _make_reconciler(store, backend).reconcile(REF)

    assert result.state == STATE_UNOWNED
    assert result.error is None
    assert result.requeue_after == 30.0
    assert store.patches == []
    assert backend.calls == []


@pytest.mark.asyncio
async def test_unready_requeue_hint_can_be_disabled(store, backend):
    store.add_plunder_machine(
        PlunderMachine(
            namespace='default',
            name='pm-0',
            owner_references=[OwnerReference(kind='Machine', name='missing')],
        )
    )
    result = await _make_reconciler(
        store, backend, unready_requeue_seconds=None,
    ).reconcile(REF)

    assert result.state == STATE_UNOWNED
    assert result.requeue_after is None


@pytest.mark.asyncio
async def test_missing_plunder_cluster_is_unclustered(store, backend, plunder_machine):
    store._plunder_clusters.clear()
    store.add_plunder_machine(plunder_machine)

    result = await _make_reconciler(store, backend).reconcile(REF)

    assert result.state == STATE_UNCLUSTERED
    assert store.stored_plunder_machine(REF).finalizers == []


# ── Test: provisioning ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_successful_provisioning_sets_provider_id(store, plunder_machine):
    backend = InMemoryPlunderBackend(
        leases=_fresh_leases(MAC),
        task_log_states=['Running', 'Completed'],
    )
    store.add_plunder_machine(plunder_machine)

    result = await _make_reconciler(store, backend).reconcile(REF)

    assert result.state == STATE_READY
    assert result.ok
    stored = store.stored_plunder_machine(REF)
    assert stored.provider_id == f'plunder://{MAC}'
    assert stored.ready is True
    assert stored.finalizers == [MACHINE_FINALIZER]
    assert backend.backend_calls == [
        ('GET', '/dhcp/unleased'),
        ('POST', '/deployment'),
        ('POST', '/parlay'),
        ('GET', '/parlay/logs/192-168-1-123'),
        ('GET', '/parlay/logs/192-168-1-123'),
    ]
    assert len(store.patches) == 1
    assert result.mutations.keys() == {'provider_id', 'ready', 'finalizers'}


@pytest.mark.asyncio
async def test_deployment_uses_settings(store, plunder_machine):
    backend = InMemoryPlunderBackend(leases=_fresh_leases(MAC))
    store.add_plunder_machine(plunder_machine)

    await _make_reconciler(
        store,
        backend,
        deployment_config_name='kickstart',
        deployment_ip_address='10.0.0.9',
    ).reconcile(REF)

    deployment = backend.deployments[0]
    assert deployment['config'] == 'kickstart'
    assert deployment['mac'] == MAC
    assert deployment['host']['address'] == '10.0.0.9'
    assert deployment['host']['hostname'].startswith('worker-')
    assert backend.tasks[0]['deployments'][0]['hosts'] == ['10.0.0.9']


@pytest.mark.asyncio
async def test_control_plane_machine_gets_controlplane_hostname(store):
    backend = InMemoryPlunderBackend(leases=_fresh_leases(MAC))
    store.add_plunder_machine(
        PlunderMachine(
            namespace='default',
            name='pm-0',
            owner_references=[OwnerReference(kind='Machine', name='cp-0')],
        )
    )

    result = await _make_reconciler(store, backend).reconcile(REF)

    assert result.state == STATE_READY
    assert backend.deployments[0]['host']['hostname'].startswith('controlplane-')


@pytest.mark.asyncio
async def test_no_capacity_persists_finalizer(store, plunder_machine):
    stale = (NOW - timedelta(minutes=45)).isoformat()
    backend = InMemoryPlunderBackend(leases=[{'Nic': MAC, 'Expiry': stale}])
    store.add_plunder_machine(plunder_machine)

    result = await _make_reconciler(store, backend).reconcile(REF)

    assert result.state == STATE_PROVISIONING
    assert result.error.code == 'no_capacity'
    assert backend.deployments == []
    stored = store.stored_plunder_machine(REF)
    assert stored.finalizers == [MACHINE_FINALIZER]
    assert stored.provider_id is None


@pytest.mark.asyncio
async def test_deployment_rejection_persists_finalizer_only(store, plunder_machine):
    backend = InMemoryPlunderBackend(
        leases=_fresh_leases(MAC),
        deployment_response=PlunderResponse(error='duplicate mac'),
    )
    store.add_plunder_machine(plunder_machine)

    result = await _make_reconciler(store, backend).reconcile(REF)

    assert result.state == STATE_PROVISIONING
    assert result.error.code == 'backend_rejected'
    assert 'duplicate mac' in result.error.message
    assert backend.tasks == []
    stored = store.stored_plunder_machine(REF)
    assert stored.finalizers == [MACHINE_FINALIZER]
    assert stored.provider_id is None
    assert stored.ready is False


@pytest.mark.asyncio
async def test_poll_timeout_is_reported(store, plunder_machine):
    backend = InMemoryPlunderBackend(
        leases=_fresh_leases(MAC),
        task_log_states=['Running'],
    )
    store.add_plunder_machine(plunder_machine)

    result = await _make_reconciler(
        store, backend, poll_max_attempts=3,
    ).reconcile(REF)

    assert result.error.code == 'provisioning_timeout'
    assert backend.log_fetches == 3
    assert store.stored_plunder_machine(REF).provider_id is None


@pytest.mark.asyncio
async def test_missing_capability_is_discovery_error(store, plunder_machine):
    backend = InMemoryPlunderBackend(
        leases=_fresh_leases(MAC),
        missing_capabilities=frozenset({'task-log'}),
    )
    store.add_plunder_machine(plunder_machine)

    result = await _make_reconciler(store, backend).reconcile(REF)

    assert result.error.code == 'endpoint_discovery_failed'
    assert backend.log_fetches == 0


@pytest.mark.asyncio
async def test_finalizer_is_not_duplicated_across_attempts(store, plunder_machine):
    backend = InMemoryPlunderBackend()
    store.add_plunder_machine(plunder_machine)
    reconciler = _make_reconciler(store, backend)

    await reconciler.reconcile(REF)
    second = await reconciler.reconcile(REF)

    assert second.error.code == 'no_capacity'
    assert store.stored_plunder_machine(REF).finalizers == [MACHINE_FINALIZER]
    assert len(store.patches) == 1


# ── Test: ready short-circuit ──────────────────────────────────────


@pytest.mark.asyncio
async def test_already_provisioned_makes_no_backend_calls(store, plunder_machine):
    plunder_machine.provider_id = f'plunder://{MAC}'
    plunder_machine.ready = True
    plunder_machine.finalizers = [MACHINE_FINALIZER]
    store.add_plunder_machine(plunder_machine)
    backend = InMemoryPlunderBackend(leases=_fresh_leases('ff:ff:ff:ff:ff:ff'))
    reconciler = _make_reconciler(store, backend)

    first = await reconciler.reconcile(REF)
    second = await reconciler.reconcile(REF)

    for result in (first, second):
        assert result.state == STATE_READY
        assert result.mutations == {}
    assert backend.backend_calls == []
    assert store.patches == []
    assert store.stored_plunder_machine(REF).provider_id == f'plunder://{MAC}'


@pytest.mark.asyncio
async def test_provider_id_without_ready_flag_is_marked_ready(store, plunder_machine):
    plunder_machine.provider_id = f'plunder://{MAC}'
    store.add_plunder_machine(plunder_machine)

    result = await _make_reconciler(store, InMemoryPlunderBackend()).reconcile(REF)

    assert result.state == STATE_READY
    stored = store.stored_plunder_machine(REF)
    assert stored.ready is True
    assert stored.finalizers == [MACHINE_FINALIZER]


# ── Test: deletion ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_deletion_releases_finalizer_even_when_provisioned(store, plunder_machine):
    plunder_machine.provider_id = f'plunder://{MAC}'
    plunder_machine.ready = True
    plunder_machine.finalizers = ['other.example.com', MACHINE_FINALIZER]
    plunder_machine.deletion_timestamp = NOW
    store.add_plunder_machine(plunder_machine)
    backend = InMemoryPlunderBackend()

    result = await _make_reconciler(store, backend).reconcile(REF)

    assert result.state == STATE_RELEASED
    assert result.mutations == {'finalizers': ['other.example.com']}
    assert backend.backend_calls == []


@pytest.mark.asyncio
async def test_deleted_resource_is_gone_on_next_reconcile(store, plunder_machine):
    plunder_machine.finalizers = [MACHINE_FINALIZER]
    plunder_machine.deletion_timestamp = NOW
    store.add_plunder_machine(plunder_machine)
    reconciler = _make_reconciler(store, InMemoryPlunderBackend())

    first = await reconciler.reconcile(REF)
    second = await reconciler.reconcile(REF)

    assert first.state == STATE_RELEASED
    assert second.state == STATE_NOT_FOUND
    with pytest.raises(ResourceNotFound):
        await store.get_plunder_machine(REF)


# ── Test: patch failures and cancellation ──────────────────────────


@pytest.mark.asyncio
async def test_patch_failure_is_reported(store, plunder_machine):
    store.add_plunder_machine(plunder_machine)
    store.fail_patch = ConnectionError('write conflict')
    backend = InMemoryPlunderBackend(leases=_fresh_leases(MAC))

    result = await _make_reconciler(store, backend).reconcile(REF)

    assert result.state == STATE_READY
    assert result.error.code == 'patch_failed'
    assert store.stored_plunder_machine(REF).provider_id is None


@pytest.mark.asyncio
async def test_provisioning_error_takes_precedence_over_patch_error(store, plunder_machine):
    store.add_plunder_machine(plunder_machine)
    store.fail_patch = ConnectionError('write conflict')

    result = await _make_reconciler(store, InMemoryPlunderBackend()).reconcile(REF)

    assert result.error.code == 'no_capacity'


@pytest.mark.asyncio
async def test_cancellation_during_poll_still_persists_finalizer(store, plunder_machine):
    backend = InMemoryPlunderBackend(
        leases=_fresh_leases(MAC),
        task_log_states=['Running'],
    )
    store.add_plunder_machine(plunder_machine)
    polling = asyncio.Event()

    async def blocking_sleep(delay: float) -> None:
        polling.set()
        await asyncio.sleep(3600)

    reconciler = MachineReconciler(
        store=store,
        client=backend,
        sleep=blocking_sleep,
        utcnow=lambda: NOW,
    )
    task = asyncio.create_task(reconciler.reconcile(REF))
    await polling.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    stored = store.stored_plunder_machine(REF)
    assert stored.finalizers == [MACHINE_FINALIZER]
    assert stored.provider_id is None
    assert len(backend.deployments) == 1


# ── Test: malformed backend data and store failures ────────────────


@pytest.mark.asyncio
async def test_malformed_lease_payload_is_reported(store, plunder_machine):
    backend = InMemoryPlunderBackend(
        dhcp_response=PlunderResponse(success=True, payload={'oops': 1}),
    )
    store.add_plunder_machine(plunder_machine)

    result = await _make_reconciler(store, backend).reconcile(REF)

    assert result.state == STATE_PROVISIONING
    assert result.error.code == 'backend_rejected'
    assert 'dhcp unleased' in result.error.message
    assert backend.deployments == []
    assert store.stored_plunder_machine(REF).finalizers == [MACHINE_FINALIZER]


@pytest.mark.asyncio
async def test_malformed_task_log_payload_is_reported(store, plunder_machine):
    backend = InMemoryPlunderBackend(
        leases=_fresh_leases(MAC),
        task_log_states=[PlunderResponse(success=True, payload='not-a-dict')],
    )
    store.add_plunder_machine(plunder_machine)

    result = await _make_reconciler(store, backend).reconcile(REF)

    assert result.state == STATE_PROVISIONING
    assert result.error.code == 'backend_rejected'
    assert 'task log' in result.error.message
    assert store.stored_plunder_machine(REF).provider_id is None


@pytest.mark.asyncio
async def test_store_load_failure_is_load_failed(store, backend):
    store.get_plunder_machine = AsyncMock(
        side_effect=BackendUnavailableError('api server unreachable'),
    )

    result = await _make_reconciler(store, backend).reconcile(REF)

    assert result.state == STATE_LOAD_FAILED
    assert result.error.code == 'backend_unavailable'
    assert backend.calls == []


@pytest.mark.asyncio
async def test_patch_failure_counts_as_reconcile_error(store, plunder_machine):
    store.add_plunder_machine(plunder_machine)
    store.fail_patch = ConnectionError('write conflict')
    before = REGISTRY.get_sample_value(
        'plunder_reconcile_errors_total', {'code': 'patch_failed'},
    ) or 0.0

    await _make_reconciler(
        store, InMemoryPlunderBackend(leases=_fresh_leases(MAC)),
    ).reconcile(REF)

    after = REGISTRY.get_sample_value(
        'plunder_reconcile_errors_total', {'code': 'patch_failed'},
    )
    assert after == before + 1
