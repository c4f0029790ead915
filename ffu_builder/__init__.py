"""FFU Builder - build pipeline for deployable OS images.

This package orchestrates the external tools that produce an FFU image:
base image apply, update servicing, VM-based provisioning and capture,
and optional distribution to USB devices. It owns the stage pipeline,
the intermediate-image cache, the parallel task engine, and
cancellation/recovery of interrupted runs.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
