"""
HTTP Input Plugin.

This plugin provides a REST API for addon groups, users and sync status.
"""

from plugins.inputs.http.api import HTTPInputPlugin

__all__ = ["HTTPInputPlugin"]
