"""
Module lifecycle: catalog, registry, resolution, installation and startup
reconciliation.

WHY THIS PACKAGE EXISTS:
Modules are installed and removed while the host may hold their files open.
Every state change is recorded in the registry before it is relied upon, and
removals are finished on the next start.
"""

from openasphalte.core.modules.manager import ModuleManager

__all__ = ["ModuleManager"]
