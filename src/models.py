"""
Core addon types shared by the reconciliation engine and its collaborators.

Both group-configured addons (desired side) and remote addons (observed side)
are represented by the same ``Addon`` dataclass.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class VerdictStatus(Enum):
    """Outcome of a single engine evaluation."""

    SYNCED = "synced"
    UNSYNCED = "unsynced"


class SyncStatus(Enum):
    """Status shown to observers of a user's sync state."""

    CHECKING = "checking"
    CONNECT = "connect"
    SYNCING = "syncing"
    SYNCED = "synced"
    UNSYNCED = "unsynced"
    STALE = "stale"


class SafetyMode(Enum):
    """Whether mutations of protected addons are gated."""

    SAFE = "safe"
    UNSAFE = "unsafe"


@dataclass(frozen=True)
class AddonRef:
    """Locators for an addon. At least one of the URLs should be set."""

    manifest_url: str = ""
    transport_url: str = ""
    url: str = ""
    id: Optional[str] = None

    @property
    def locator(self) -> str:
        """The first non-empty locator, as given."""
        return self.manifest_url or self.transport_url or self.url or ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"manifestUrl": self.manifest_url}
        if self.transport_url:
            data["transportUrl"] = self.transport_url
        if self.url:
            data["url"] = self.url
        if self.id:
            data["id"] = self.id
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AddonRef":
        """
        Build a reference from a mapping in the remote wire shape.

        Raises:
            ValueError: If none of manifestUrl, transportUrl or url is present.
        """
        manifest_url = str(data.get("manifestUrl") or data.get("manifest_url") or "")
        transport_url = str(
            data.get("transportUrl") or data.get("transport_url") or ""
        )
        url = str(data.get("url") or "")
        if not (manifest_url.strip() or transport_url.strip() or url.strip()):
            raise ValueError("Addon reference needs manifestUrl, transportUrl or url")
        addon_id = data.get("id")
        return cls(
            manifest_url=manifest_url,
            transport_url=transport_url,
            url=url,
            id=str(addon_id) if addon_id else None,
        )


@dataclass
class Addon:
    """An addon as configured in a group or installed on a remote account."""

    ref: AddonRef
    manifest: Optional[Dict[str, Any]] = None
    name: Optional[str] = None
    version: Optional[str] = None
    is_enabled: bool = True
    # Remote collection entry as read from the account, written back as-is
    descriptor: Optional[Dict[str, Any]] = field(
        default=None, repr=False, compare=False
    )

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        if isinstance(self.manifest, dict) and self.manifest.get("name"):
            return str(self.manifest["name"])
        return self.ref.locator

    def to_dict(self) -> Dict[str, Any]:
        data = self.ref.to_dict()
        data["manifest"] = self.manifest
        data["name"] = self.name
        data["version"] = self.version
        data["isEnabled"] = self.is_enabled
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Addon":
        """
        Build an addon from a mapping.

        Accepts both the remote collection shape (``transportUrl`` plus
        ``manifest``) and the group shape (``manifestUrl``, ``isEnabled``).
        """
        manifest = data.get("manifest")
        if manifest is not None and not isinstance(manifest, dict):
            manifest = None

        enabled = data.get("isEnabled", data.get("enabled", data.get("is_enabled")))

        name = data.get("name")
        version = data.get("version")
        if manifest:
            name = name or manifest.get("name")
            version = version or manifest.get("version")

        return cls(
            ref=AddonRef.from_dict(data),
            manifest=manifest,
            name=str(name) if name is not None else None,
            version=str(version) if version is not None else None,
            is_enabled=True if enabled is None else bool(enabled),
        )


@dataclass
class SyncVerdict:
    """Result of comparing a desired addon list against remote state."""

    status: VerdictStatus = VerdictStatus.SYNCED
    missing: List[AddonRef] = field(default_factory=list)
    misordered: bool = False
    extras: List[AddonRef] = field(default_factory=list)

    @property
    def is_synced(self) -> bool:
        return self.status == VerdictStatus.SYNCED

    @property
    def reasons(self) -> List[str]:
        """Human-readable explanation of why the verdict is unsynced."""
        reasons = []
        for ref in self.missing:
            reasons.append(f"missing: {ref.locator}")
        if self.misordered:
            reasons.append("addons are out of order")
        for ref in self.extras:
            reasons.append(f"extra: {ref.locator}")
        return reasons

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "missing": [ref.to_dict() for ref in self.missing],
            "misordered": self.misordered,
            "extras": [ref.to_dict() for ref in self.extras],
            "reasons": self.reasons,
        }


@dataclass(frozen=True)
class AccountRef:
    """Handle used by account plugins to reach a user's remote account."""

    user_id: int
    auth_key: str = field(default="", repr=False)  # Never log auth keys
