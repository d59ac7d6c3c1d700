"""Provisioning backend adapters for the controller."""

from .plunder_client import (
    CAPABILITY_DEPLOYMENT,
    CAPABILITY_DHCP,
    CAPABILITY_TASK_LOG,
    CAPABILITY_TASK_SUBMIT,
    Endpoint,
    PlunderClient,
    PlunderResponse,
    backend_function,
)

__all__ = [
    "CAPABILITY_DEPLOYMENT",
    "CAPABILITY_DHCP",
    "CAPABILITY_TASK_LOG",
    "CAPABILITY_TASK_SUBMIT",
    "Endpoint",
    "PlunderClient",
    "PlunderResponse",
    "backend_function",
]
