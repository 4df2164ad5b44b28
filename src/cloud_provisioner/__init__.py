"""
cloud-provisioner — bulk cloud project and API credential provisioning.

Purpose
- Package root. Create many cloud projects, enable an API on each and extract
  one credential per project through a staged, bounded-concurrency pipeline.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
