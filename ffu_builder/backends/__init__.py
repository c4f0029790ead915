"""Backends for downloads and device provisioning.

This module handles:
- HTTP(S) and local-copy downloads of drivers, apps and updates
- Target device validation
- Raw image writes with read-back verification
"""

from ffu_builder.backends.http import HttpFetchBackend
from ffu_builder.backends.usb import RawDeviceProvisioner

__all__ = ["HttpFetchBackend", "RawDeviceProvisioner"]
