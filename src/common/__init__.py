"""
Common utilities for the Terraform state backend.

Modules:
- auth: authorization plugins (fail, noop, basic) and request context
- config: environment / SSM Parameter Store settings
- backend_client: httpx client for the backend's HTTP surface
"""

__all__ = [
    "auth",
    "config",
    "backend_client",
]
