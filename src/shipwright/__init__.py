"""
shipwright — governed pipeline core

File: src/shipwright/__init__.py

Purpose
- Package root for the orchestration core that drives AI-generated builds
  through plan/structure governance gates, a retryable background-run
  lifecycle, and a signed release trust bundle.

Import boundary rules
- No side effects at import time (no config loading, no logging init).
- Submodules are imported explicitly by callers; keep this surface small.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
