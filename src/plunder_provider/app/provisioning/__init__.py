"""Provisioning protocol and reconcile state machine."""

from .completion import CompletionPoller, CompletionResult
from .deployment import DeploymentRequest, build_deployment_request, build_hostname
from .leases import Lease, select_lease
from .reconciler import MachineReconciler, ReconcileResult, decide

__all__ = [
    'CompletionPoller',
    'CompletionResult',
    'DeploymentRequest',
    'Lease',
    'MachineReconciler',
    'ReconcileResult',
    'build_deployment_request',
    'build_hostname',
    'decide',
    'select_lease',
]
