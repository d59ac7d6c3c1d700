"""Controller configuration settings.

ControllerSettings is the single configuration object accepted by
create_app() and MachineReconciler. It is intentionally a plain dataclass
(not env-coupled) so tests can inject config without touching os.environ.
"""

from __future__ import annotations

import os
import string
from dataclasses import dataclass

DEFAULT_HOSTNAME_CHARSET = string.ascii_lowercase + string.ascii_uppercase + string.digits

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True, slots=True)
class ControllerSettings:
    """Configuration for the PlunderMachine reconciler and its host app.

    All fields have sensible defaults for local development.
    Non-local environments must supply a real plunder_url.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    # ── Plunder backend ────────────────────────────────────────────
    plunder_url: str = ""
    """Base URL of the Plunder API server (e.g. https://plunder:60443)."""

    plunder_timeout_seconds: float = 30.0
    plunder_verify_tls: bool = True

    # ── Deployment ─────────────────────────────────────────────────
    deployment_config_name: str = "preseed"
    """Plunder configuration profile applied to new hosts."""

    deployment_ip_address: str = "192.168.1.123"
    """Address assigned to the provisioned host."""

    lease_freshness_seconds: float = 600.0
    hostname_suffix_length: int = 5
    hostname_charset: str = DEFAULT_HOSTNAME_CHARSET

    # ── Completion polling ─────────────────────────────────────────
    verification_command: str = "uptime"
    poll_interval_seconds: float = 5.0
    poll_max_duration_seconds: float = 1800.0
    poll_max_attempts: int | None = None

    # ── Requeue ────────────────────────────────────────────────────
    unready_requeue_seconds: float | None = 30.0
    """Requeue hint returned when the owner chain is not resolvable yet."""

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if not self.is_local and not self.plunder_url:
            errors.append(f"{self.environment}: plunder_url is required")
        if self.hostname_suffix_length < 1:
            errors.append("hostname_suffix_length must be >= 1")
        if not self.hostname_charset:
            errors.append("hostname_charset must not be empty")
        if self.lease_freshness_seconds <= 0:
            errors.append("lease_freshness_seconds must be > 0")
        if self.poll_interval_seconds < 0:
            errors.append("poll_interval_seconds must be >= 0")
        if self.poll_max_duration_seconds <= 0:
            errors.append("poll_max_duration_seconds must be > 0")
        if self.poll_max_attempts is not None and self.poll_max_attempts < 1:
            errors.append("poll_max_attempts must be >= 1")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> ControllerSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct ControllerSettings directly.
        """
        if env is None:
            env = dict(os.environ)
        defaults = cls()

        max_attempts_raw = env.get("POLL_MAX_ATTEMPTS", "").strip()
        requeue_raw = env.get("UNREADY_REQUEUE_SECONDS", "").strip()
        if not requeue_raw:
            unready_requeue: float | None = defaults.unready_requeue_seconds
        elif requeue_raw.lower() in ("none", "off", "0"):
            unready_requeue = None
        else:
            unready_requeue = float(requeue_raw)

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            plunder_url=env.get("PLUNDER_URL", ""),
            plunder_timeout_seconds=float(
                env.get("PLUNDER_TIMEOUT_SECONDS", defaults.plunder_timeout_seconds)
            ),
            plunder_verify_tls=(
                env.get("PLUNDER_VERIFY_TLS", "true").strip().lower() in _TRUE_VALUES
            ),
            deployment_config_name=env.get(
                "DEPLOYMENT_CONFIG_NAME", defaults.deployment_config_name
            ),
            deployment_ip_address=env.get(
                "DEPLOYMENT_IP_ADDRESS", defaults.deployment_ip_address
            ),
            lease_freshness_seconds=float(
                env.get("LEASE_FRESHNESS_SECONDS", defaults.lease_freshness_seconds)
            ),
            hostname_suffix_length=int(
                env.get("HOSTNAME_SUFFIX_LENGTH", defaults.hostname_suffix_length)
            ),
            hostname_charset=env.get("HOSTNAME_CHARSET", "") or defaults.hostname_charset,
            verification_command=env.get(
                "VERIFICATION_COMMAND", defaults.verification_command
            ),
            poll_interval_seconds=float(
                env.get("POLL_INTERVAL_SECONDS", defaults.poll_interval_seconds)
            ),
            poll_max_duration_seconds=float(
                env.get("POLL_MAX_DURATION_SECONDS", defaults.poll_max_duration_seconds)
            ),
            poll_max_attempts=int(max_attempts_raw) if max_attempts_raw else None,
            unready_requeue_seconds=unready_requeue,
        )
