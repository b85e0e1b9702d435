"""Deployer options, node readiness and metrics, and infrastructure stack management for EKS test runs."""

__version__ = "0.1.0"