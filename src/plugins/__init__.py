"""
Plugin system for addonsync.

This package provides the plugin architecture for remote account access
and input sources.
"""

from plugins.base import ChangeEvent, ChangeKind
from plugins.accounts.base import AccountPlugin
from plugins.registry import PluginRegistry, get_registry

__all__ = [
    "AccountPlugin",
    "ChangeEvent",
    "ChangeKind",
    "PluginRegistry",
    "get_registry",
]
