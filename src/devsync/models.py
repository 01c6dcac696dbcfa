"""Device and sync record models.

Intune managed devices and Defender machines are joined on the Azure AD
device id (``azureADDeviceId`` on the Intune side, ``aadDeviceId`` on the
Defender side). The full source payload is carried through untouched.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from devsync.errors import ValidationError


def _clean_key(value: Any) -> str | None:
    """Normalize an identity key; empty strings count as missing."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class SyncState(Enum):
    """Which source catalog(s) a device was found in."""
    MATCHED = "matched"
    ONLY_INTUNE = "only_intune"
    ONLY_DEFENDER = "only_defender"

    @classmethod
    def parse(cls, value: str) -> "SyncState":
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValidationError(f"Invalid syncState '{value}'. Must be one of: {valid}") from None


@dataclass(frozen=True)
class ManagedDevice:
    """An Intune managed device."""
    id: str
    azure_ad_device_id: str | None = None
    device_name: str | None = None
    data: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def identity_key(self) -> str | None:
        return self.azure_ad_device_id

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> "ManagedDevice":
        if not doc.get("id"):
            raise ValueError("Managed device is missing 'id'")
        return cls(
            id=str(doc["id"]),
            azure_ad_device_id=_clean_key(doc.get("azureADDeviceId")),
            device_name=doc.get("deviceName"),
            data=dict(doc),
        )

    def to_dict(self) -> dict[str, Any]:
        if self.data:
            return dict(self.data)
        doc: dict[str, Any] = {"id": self.id, "azureADDeviceId": self.azure_ad_device_id}
        if self.device_name is not None:
            doc["deviceName"] = self.device_name
        return doc


@dataclass(frozen=True)
class DefenderDevice:
    """A Defender for Endpoint machine."""
    id: str
    aad_device_id: str | None = None
    computer_dns_name: str | None = None
    data: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def identity_key(self) -> str | None:
        return self.aad_device_id

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> "DefenderDevice":
        if not doc.get("id"):
            raise ValueError("Defender device is missing 'id'")
        return cls(
            id=str(doc["id"]),
            aad_device_id=_clean_key(doc.get("aadDeviceId")),
            computer_dns_name=doc.get("computerDnsName"),
            data=dict(doc),
        )

    def to_dict(self) -> dict[str, Any]:
        if self.data:
            return dict(self.data)
        doc: dict[str, Any] = {"id": self.id, "aadDeviceId": self.aad_device_id}
        if self.computer_dns_name is not None:
            doc["computerDnsName"] = self.computer_dns_name
        return doc


@dataclass
class SyncRecord:
    """One cross-referenced device (or device pair) produced by a sync run."""
    id: str
    sync_key: str
    sync_state: SyncState
    sync_timestamp: str
    intune: ManagedDevice | None = None
    defender: DefenderDevice | None = None

    def is_valid(self) -> bool:
        """Check that the populated sides agree with the sync state."""
        if not (self.id and self.sync_key and self.sync_timestamp):
            return False
        has_intune = self.intune is not None
        has_defender = self.defender is not None
        if self.sync_state == SyncState.MATCHED:
            return has_intune and has_defender
        if self.sync_state == SyncState.ONLY_INTUNE:
            return has_intune and not has_defender
        if self.sync_state == SyncState.ONLY_DEFENDER:
            return has_defender and not has_intune
        return False

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the stored document shape.

        A missing side is left out of the document entirely.
        """
        doc: dict[str, Any] = {
            "id": self.id,
            "syncKey": self.sync_key,
            "syncState": self.sync_state.value,
            "syncTimestamp": self.sync_timestamp,
        }
        if self.intune is not None:
            doc["intune"] = self.intune.to_dict()
        if self.defender is not None:
            doc["defender"] = self.defender.to_dict()
        return doc

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> "SyncRecord":
        intune = doc.get("intune")
        defender = doc.get("defender")
        return cls(
            id=doc["id"],
            sync_key=doc["syncKey"],
            sync_state=SyncState.parse(doc["syncState"]),
            sync_timestamp=doc["syncTimestamp"],
            intune=ManagedDevice.from_dict(intune) if intune else None,
            defender=DefenderDevice.from_dict(defender) if defender else None,
        )
