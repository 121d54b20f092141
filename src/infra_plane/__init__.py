"""Provisioning orchestration service for per-session Terraform stacks."""

__version__ = "0.1.0"
