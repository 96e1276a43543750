"""Stremio account plugin."""

from plugins.accounts.stremio.plugin import StremioAccountPlugin

__all__ = ["StremioAccountPlugin"]
