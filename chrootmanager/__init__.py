"""Chroot manager for source-based distribution environments.

Core design goals:
- Mirror catalog fetched, never hard-coded
- Profiles discovered per mirror, never merged across mirrors
- Deterministic mirror ranking
- One durable artifact: the persisted Selection
- Resumable chroot creation
- Centralized logging
"""

__version__ = "0.3.0"

__all__ = ["__version__"]
