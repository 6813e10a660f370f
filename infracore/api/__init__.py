"""Python API.

The :class:`InfraCore` facade is the single entry point for the
deploy/status/logs/restart/start/stop/rollback commands.
"""

from infracore.api.facade import InfraCore

__all__ = ["InfraCore"]
