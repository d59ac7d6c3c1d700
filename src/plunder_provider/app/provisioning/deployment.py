"""Deployment request construction and submission.

A deployment tells Plunder which configuration profile to install on the
hardware behind a MAC address, and which address and hostname the host
gets. Hostnames are ``controlplane-<suffix>`` or ``worker-<suffix>`` with a
random suffix drawn from a configurable charset by an explicitly passed
generator. Collisions with existing hostnames are not checked.
"""

from __future__ import annotations

import logging
import random
import secrets
from dataclasses import dataclass
from typing import Any

from ..protocols import ProvisioningClient
from ..providers.plunder_client import CAPABILITY_DEPLOYMENT
from ..resources.models import ROLE_CONTROL_PLANE, ROLE_WORKER
from ..settings import DEFAULT_HOSTNAME_CHARSET

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = 'preseed'
DEFAULT_SUFFIX_LENGTH = 5
DEFAULT_CHARSET = DEFAULT_HOSTNAME_CHARSET

HOSTNAME_PREFIXES = {
    ROLE_CONTROL_PLANE: 'controlplane-',
    ROLE_WORKER: 'worker-',
}


@dataclass(frozen=True, slots=True)
class DeploymentRequest:
    """One deployment submission for a single piece of hardware."""

    config_name: str
    mac: str
    hostname: str
    ip_address: str

    def to_payload(self) -> dict[str, Any]:
        return {
            'config': self.config_name,
            'mac': self.mac,
            'host': {
                'address': self.ip_address,
                'hostname': self.hostname,
            },
        }


def build_hostname(
    role: str,
    *,
    rng: random.Random | None = None,
    length: int = DEFAULT_SUFFIX_LENGTH,
    charset: str = DEFAULT_CHARSET,
) -> str:
    """Role prefix plus ``length`` characters drawn from ``charset``."""
    try:
        prefix = HOSTNAME_PREFIXES[role]
    except KeyError:
        raise ValueError(f'unknown machine role: {role!r}') from None
    if length < 1:
        raise ValueError('length must be >= 1')
    if not charset:
        raise ValueError('charset must not be empty')

    rng = rng or secrets.SystemRandom()
    suffix = ''.join(rng.choice(charset) for _ in range(length))
    return f'{prefix}{suffix}'


def build_deployment_request(
    mac: str,
    role: str,
    *,
    ip_address: str,
    config_name: str = DEFAULT_CONFIG_NAME,
    rng: random.Random | None = None,
    suffix_length: int = DEFAULT_SUFFIX_LENGTH,
    charset: str = DEFAULT_CHARSET,
) -> DeploymentRequest:
    """Build a fresh deployment request for ``mac`` in the given role."""
    return DeploymentRequest(
        config_name=config_name,
        mac=mac,
        hostname=build_hostname(
            role, rng=rng, length=suffix_length, charset=charset,
        ),
        ip_address=ip_address,
    )


async def submit_deployment(
    client: ProvisioningClient,
    request: DeploymentRequest,
) -> None:
    """POST the deployment to the backend's ``deployment`` endpoint."""
    endpoint = await client.discover_endpoint(CAPABILITY_DEPLOYMENT, 'POST')
    response = await client.post(endpoint.path, request.to_payload())
    response.raise_for_error(operation='deployment')
    logger.info(
        'Deployment submitted: mac=%s hostname=%s',
        request.mac,
        request.hostname,
        extra={'mac': request.mac, 'hostname': request.hostname},
    )
