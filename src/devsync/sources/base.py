"""Source reader interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

from devsync.models import DefenderDevice, ManagedDevice

DeviceT = TypeVar("DeviceT", ManagedDevice, DefenderDevice)


@dataclass
class FetchResult(Generic[DeviceT]):
    """Everything one source returned for a sync run."""
    devices: list[DeviceT] = field(default_factory=list)
    cost: float = 0.0


class SourceReader(ABC, Generic[DeviceT]):
    """Fetches the full device inventory of one source catalog."""

    name: str = "source"
    device_factory: Callable[[dict[str, Any]], DeviceT]

    @abstractmethod
    async def fetch_all(self) -> FetchResult[DeviceT]:
        """Page through the source until exhausted."""

    def _parse(self, raw: list[dict[str, Any]]) -> list[DeviceT]:
        return [self.device_factory(doc) for doc in raw]
