"""
Host platform adapters.
"""
from .host_platform_client import HostPlatformClient

__all__ = ["HostPlatformClient"]
