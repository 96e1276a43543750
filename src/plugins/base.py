"""
Core plugin types and dataclasses.

This module contains shared types used across the plugin system.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class ChangeKind(Enum):
    """Kinds of configuration changes reported by input plugins."""

    GROUP_UPDATED = "group_updated"
    GROUP_DELETED = "group_deleted"
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"


@dataclass
class ChangeEvent:
    """A configuration change that may affect sync status."""

    kind: ChangeKind
    group_id: Optional[int] = None
    user_id: Optional[int] = None
