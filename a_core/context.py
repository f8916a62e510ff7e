from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from a_users.device_store import DeviceStore


@dataclass(frozen=True)
class ClientContext:
    """
    Who is calling, and from which device.

    Every core operation receives one of these explicitly instead of reading
    a process-wide "current user". `device` is the caller's local, non-synced
    key/value store (private keys, drafts).
    """

    uid: Optional[str]
    device: "DeviceStore"

    @property
    def is_authenticated(self) -> bool:
        return bool(self.uid)
