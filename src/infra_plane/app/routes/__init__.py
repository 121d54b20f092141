"""HTTP route modules for infra-plane."""

from .provisioning import create_provisioning_router

__all__ = ['create_provisioning_router']
