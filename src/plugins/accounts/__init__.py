"""Account plugins for reading and writing remote addon collections."""

from plugins.accounts.base import AccountPlugin

__all__ = ["AccountPlugin"]
