from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Set

from ..config import get_settings
from ..errors import SlotUnavailable, StoreUnavailable
from ..models import utcnow
from .hold_store import HoldStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Hold:
    hold_id: str
    provider_id: str
    location_id: str
    start_ts: datetime
    end_ts: datetime
    requester_id: str
    created_at: datetime
    ttl_seconds: int

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.ttl_seconds)

    def to_json(self) -> str:
        return json.dumps({
            "hold_id": self.hold_id,
            "provider_id": self.provider_id,
            "location_id": self.location_id,
            "start_ts": self.start_ts.isoformat(),
            "end_ts": self.end_ts.isoformat(),
            "requester_id": self.requester_id,
            "created_at": self.created_at.isoformat(),
            "ttl_seconds": self.ttl_seconds,
        })

    @classmethod
    def from_json(cls, raw: str) -> "Hold":
        data = json.loads(raw)
        return cls(
            hold_id=data["hold_id"],
            provider_id=data["provider_id"],
            location_id=data["location_id"],
            start_ts=datetime.fromisoformat(data["start_ts"]),
            end_ts=datetime.fromisoformat(data["end_ts"]),
            requester_id=data["requester_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            ttl_seconds=int(data["ttl_seconds"]),
        )


def slot_key(provider_id: str, location_id: str, start_ts: datetime) -> str:
    return f"hold:slot:{provider_id}:{location_id}:{start_ts.isoformat()}"


def _id_key(hold_id: str) -> str:
    return f"hold:id:{hold_id}"


class HoldManager:
    """
    Short-lived exclusive claims on slots.

    The slot key ``(provider, location, start)`` carries the hold itself and
    is written with a single set-if-absent, so exactly one caller wins per
    TTL window. A second key maps the opaque hold id back to the slot key.
    """

    def __init__(
        self,
        store: HoldStore,
        ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds or get_settings().hold_ttl_seconds
        self.clock = clock

    def create_hold(
        self,
        provider_id: str,
        location_id: str,
        start_ts: datetime,
        end_ts: datetime,
        requester_id: str,
    ) -> Hold:
        hold = Hold(
            hold_id="hold_" + uuid.uuid4().hex,
            provider_id=provider_id,
            location_id=location_id,
            start_ts=start_ts,
            end_ts=end_ts,
            requester_id=requester_id,
            created_at=self.clock(),
            ttl_seconds=self.ttl_seconds,
        )
        key = slot_key(provider_id, location_id, start_ts)
        payload = hold.to_json()

        if not self.store.create_if_absent(key, payload, self.ttl_seconds):
            raise SlotUnavailable("Slot is currently held by another user")

        try:
            self.store.create_if_absent(_id_key(hold.hold_id), key, self.ttl_seconds)
        except StoreUnavailable:
            self._discard(key, payload)
            raise

        logger.info("Hold %s granted on %s until %s", hold.hold_id, key, hold.expires_at.isoformat())
        return hold

    def get_hold(self, hold_id: str) -> Optional[Hold]:
        key = self.store.get(_id_key(hold_id))
        if key is None:
            return None
        payload = self.store.get(key)
        if payload is None:
            return None
        hold = Hold.from_json(payload)
        # The slot may have expired and been claimed again under a new id.
        if hold.hold_id != hold_id or self.clock() >= hold.expires_at:
            return None
        return hold

    def release_hold(self, hold_id: str) -> None:
        key = self.store.get(_id_key(hold_id))
        if key is None:
            return
        payload = self.store.get(key)
        if payload is not None and Hold.from_json(payload).hold_id == hold_id:
            self.store.delete(key, expected=payload)
        self.store.delete(_id_key(hold_id))
        logger.info("Hold %s released", hold_id)

    def held_starts(self, provider_id: str, location_id: str, starts: Iterable[datetime]) -> Set[datetime]:
        """Which of the given slot starts currently carry a hold."""
        starts = list(starts)
        values = self.store.get_many([slot_key(provider_id, location_id, s) for s in starts])
        return {s for s, v in zip(starts, values) if v is not None}

    def _discard(self, key: str, payload: str) -> None:
        try:
            self.store.delete(key, expected=payload)
        except StoreUnavailable:
            logger.warning("Could not roll back half-created hold on %s; it will expire on its own", key)
