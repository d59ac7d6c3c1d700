"""Cluster API infrastructure provider for Plunder bare-metal provisioning."""

__version__ = "0.1.0"
