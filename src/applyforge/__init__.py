"""
applyforge: apply orchestration engine

Purpose
- Drive a declarative hardening bundle for one managed host through a fixed
  sequence of apply steps, surviving reboots and gating mission completion on
  blocking failures and audit integrity.

Import boundary
- No side effects at import time (no config loading, no logging init).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
