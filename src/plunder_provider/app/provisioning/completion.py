"""Completion polling: verify a freshly deployed host actually came up.

After a deployment is accepted the controller submits a verification task
(a Parlay treasure map running one command, ``uptime`` by default, on the
new host) and then polls the task log until the backend reports a terminal
state:

  submit task -> [sleep interval -> fetch log]* -> Completed

Termination rules:
  - ``Completed`` -> success
  - ``Failed`` or an error in any response -> ``BackendRejectedError``,
    no further fetches
  - ``max_attempts`` fetches or ``max_duration_seconds`` without reaching
    ``Completed`` -> ``ProvisioningTimeoutError``

The wait between polls is an ``asyncio.sleep``, so cancelling the
surrounding task aborts the poll immediately.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from ..errors import BackendRejectedError, ProvisioningTimeoutError
from ..protocols import ProvisioningClient
from ..providers.plunder_client import CAPABILITY_TASK_LOG, CAPABILITY_TASK_SUBMIT

logger = logging.getLogger(__name__)

TASK_PENDING = 'Pending'
TASK_RUNNING = 'Running'
TASK_COMPLETED = 'Completed'
TASK_FAILED = 'Failed'

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_DURATION_SECONDS = 1800.0
DEFAULT_VERIFICATION_COMMAND = 'uptime'

DEPLOYMENT_NAME = 'Cluster-API provisioning'


class _TaskLog(BaseModel):
    model_config = ConfigDict(extra='ignore')

    state: str = Field(default='', validation_alias=AliasChoices('state', 'State'))


@dataclass(frozen=True, slots=True)
class CompletionResult:
    """Outcome of a successful verification poll."""

    attempts: int
    elapsed_seconds: float


def verification_task(
    host: str,
    command: str = DEFAULT_VERIFICATION_COMMAND,
) -> dict[str, Any]:
    """Treasure map that runs ``command`` once on ``host``."""
    return {
        'deployments': [
            {
                'name': DEPLOYMENT_NAME,
                'parallel': False,
                'hosts': [host],
                'actions': [
                    {
                        'type': 'command',
                        'command': command,
                        'name': f'{DEPLOYMENT_NAME} {command} command',
                    },
                ],
            },
        ],
    }


def _parse_task_state(payload: Any) -> str:
    try:
        return _TaskLog.model_validate(payload or {}).state
    except ValidationError as e:
        raise BackendRejectedError(
            f'malformed task log payload: {e.error_count()} errors',
            operation='task log',
        ) from e


def log_address_key(host: str) -> str:
    """Key the backend files task logs under: the address with dashes."""
    return host.replace('.', '-')


class CompletionPoller:
    """Submits the verification task and waits for it to complete.

    Args:
        client: Provisioning backend client.
        interval_seconds: Delay before each log fetch.
        max_duration_seconds: Upper bound on total wall-clock time.
        max_attempts: Optional upper bound on log fetches.
        command: Command the verification task runs on the host.
        sleep: Awaitable delay, ``asyncio.sleep`` unless a test injects one.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        client: ProvisioningClient,
        *,
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_duration_seconds: float = DEFAULT_MAX_DURATION_SECONDS,
        max_attempts: int | None = None,
        command: str = DEFAULT_VERIFICATION_COMMAND,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_duration_seconds <= 0:
            raise ValueError('max_duration_seconds must be > 0')
        if max_attempts is not None and max_attempts < 1:
            raise ValueError('max_attempts must be >= 1')
        self._client = client
        self._interval = interval_seconds
        self._max_duration = max_duration_seconds
        self._max_attempts = max_attempts
        self._command = command
        self._sleep = sleep
        self._clock = clock

    async def submit(self, host: str) -> None:
        """POST the verification task for ``host``."""
        endpoint = await self._client.discover_endpoint(CAPABILITY_TASK_SUBMIT, 'POST')
        response = await self._client.post(
            endpoint.path, verification_task(host, self._command),
        )
        response.raise_for_error(operation='task submit')

    async def run(self, host: str) -> CompletionResult:
        """Submit the task for ``host`` and poll its log until completion.

        Raises:
            BackendRejectedError: A response carried an error, or the task
                reported ``Failed``.
            ProvisioningTimeoutError: The bound was reached first.
        """
        started = self._clock()
        await self.submit(host)

        endpoint = await self._client.discover_endpoint(CAPABILITY_TASK_LOG, 'GET')
        log_path = f"{endpoint.path.rstrip('/')}/{log_address_key(host)}"

        attempts = 0
        while True:
            elapsed = self._clock() - started
            if (
                self._max_attempts is not None and attempts >= self._max_attempts
            ) or elapsed >= self._max_duration:
                raise ProvisioningTimeoutError(
                    attempts=attempts, elapsed_seconds=elapsed,
                )

            await self._sleep(self._interval)

            response = await self._client.get(log_path)
            attempts += 1
            response.raise_for_error(operation='task log')
            state = _parse_task_state(response.payload)

            logger.debug(
                'Verification task state=%s attempt=%d',
                state,
                attempts,
                extra={'host': host, 'task_state': state, 'attempt': attempts},
            )
            if state == TASK_COMPLETED:
                elapsed = self._clock() - started
                logger.info(
                    'Host has been successfully provisioned in %.0f seconds',
                    elapsed,
                    extra={'host': host, 'attempts': attempts},
                )
                return CompletionResult(attempts=attempts, elapsed_seconds=elapsed)
            if state == TASK_FAILED:
                raise BackendRejectedError(
                    f'verification command {self._command!r} failed on {host}',
                    operation='task log',
                )
