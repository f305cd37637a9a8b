"""HTTP transport for the lab lifecycle operations."""

from hacklab.api.app import create_app, status_code_for
from hacklab.api.deps import Services, build_services


__all__ = ["Services", "build_services", "create_app", "status_code_for"]
