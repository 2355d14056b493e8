"""Managed cluster registration: client certificates, feature gates, status and RBAC clean-up helpers."""

__version__ = "0.1.0"
__all__ = ["clientcert", "features", "helpers"]