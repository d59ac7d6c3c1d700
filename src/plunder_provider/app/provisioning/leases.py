"""Lease selection: pick the hardware to provision from Plunder's DHCP view.

Plunder lists every MAC address that has asked for a DHCP address but has
not been leased a deployment yet. A lease whose expiry was assigned recently
belongs to a host that is still booting and waiting for a deployment; older
entries are stale and must not be claimed.

Selection policy:
  - a lease qualifies when ``now - expiry < freshness`` (default 10 minutes)
  - among qualifying leases the last one in backend order wins
  - no qualifying lease -> ``NoCapacityError`` (retryable)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from ..errors import BackendRejectedError, NoCapacityError
from ..protocols import ProvisioningClient
from ..providers.plunder_client import CAPABILITY_DHCP

logger = logging.getLogger(__name__)

DEFAULT_LEASE_FRESHNESS = timedelta(minutes=10)
UNLEASED_SUFFIX = 'unleased'

# Go encodes time.Time with up to nanosecond precision.
_FRACTION_RE = re.compile(r'(\.\d{6})\d+')


@dataclass(frozen=True, slots=True)
class Lease:
    """A MAC address waiting for a deployment, with its lease expiry."""

    nic: str
    expiry: datetime


class _LeasePayload(BaseModel):
    model_config = ConfigDict(extra='ignore')

    nic: str = Field(validation_alias=AliasChoices('Nic', 'nic', 'mac'))
    expiry: datetime = Field(validation_alias=AliasChoices('Expiry', 'expiry'))

    @field_validator('expiry', mode='before')
    @classmethod
    def _truncate_nanoseconds(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _FRACTION_RE.sub(r'\1', value)
        return value


_LEASE_LIST = TypeAdapter(list[_LeasePayload])


def parse_leases(payload: Any) -> list[Lease]:
    """Decode the backend's unleased-address payload, preserving order.

    Raises:
        BackendRejectedError: If the payload is not a list of leases.
    """
    if payload is None:
        return []
    try:
        items = _LEASE_LIST.validate_python(payload)
    except ValidationError as e:
        raise BackendRejectedError(
            f'malformed lease payload: {e.error_count()} errors',
            operation='dhcp unleased',
        ) from e

    leases = []
    for item in items:
        expiry = item.expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        leases.append(Lease(nic=item.nic, expiry=expiry))
    return leases


def select_lease(
    leases: Sequence[Lease],
    *,
    now: datetime,
    freshness: timedelta = DEFAULT_LEASE_FRESHNESS,
) -> Lease:
    """Return the last fresh lease in ``leases``.

    Raises:
        NoCapacityError: If no lease is younger than ``freshness``.
    """
    selected: Lease | None = None
    for lease in leases:
        if now - lease.expiry < freshness:
            selected = lease

    if selected is None:
        raise NoCapacityError(
            f'no free hardware for provisioning ({len(leases)} leases, '
            f'none fresher than {int(freshness.total_seconds())}s)'
        )
    return selected


async def fetch_unleased(client: ProvisioningClient) -> list[Lease]:
    """GET the unleased addresses from the backend's ``dhcp`` endpoint."""
    endpoint = await client.discover_endpoint(CAPABILITY_DHCP, 'GET')
    path = f"{endpoint.path.rstrip('/')}/{UNLEASED_SUFFIX}"
    response = await client.get(path)
    response.raise_for_error(operation='dhcp unleased')
    return parse_leases(response.payload)


async def acquire_lease(
    client: ProvisioningClient,
    *,
    now: datetime | None = None,
    freshness: timedelta = DEFAULT_LEASE_FRESHNESS,
) -> Lease:
    """Fetch unleased addresses and pick the hardware to provision."""
    leases = await fetch_unleased(client)
    lease = select_lease(
        leases,
        now=now or datetime.now(timezone.utc),
        freshness=freshness,
    )
    logger.info(
        'Found hardware %s',
        lease.nic,
        extra={'mac': lease.nic, 'candidates': len(leases)},
    )
    return lease
