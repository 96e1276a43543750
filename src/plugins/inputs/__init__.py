"""
Input plugins package.

Input plugins let operators manage groups and users and observe sync
status (HTTP API, etc.)
"""

from plugins.inputs.base import InputPlugin

__all__ = ["InputPlugin"]
