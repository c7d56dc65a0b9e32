"""In-process serialization of the read-last-number / submit sequence.

The authority offers no compare-and-swap: two emissions for the same
(tenant, sales point, document type) that overlap both read the same last
number and one of them is refused. Holding the key's lock from the lookup
until the authority answers makes the sequence atomic within the process.
Different keys never block each other.
"""

from __future__ import annotations

import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Iterator, List, Optional, Tuple

SlotKey = Tuple[str, int, int]

# Two entries per emission; older entries fall off
DEFAULT_AUDIT_SIZE = 2000


def _default_clock() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EmissionSlot:
    slot_id: str
    tenant_id: str
    sales_point: int
    document_type: int
    acquired_at: datetime
    status: str = "held"
    number: Optional[int] = None


class EmissionSerializer:
    """Hands out one lock per numbering key and records every hold."""

    def __init__(
        self, *, clock: Callable[[], datetime] | None = None, audit_size: int = DEFAULT_AUDIT_SIZE
    ) -> None:
        self._clock = clock or _default_clock
        self._registry_lock = threading.Lock()
        self._locks: Dict[SlotKey, threading.Lock] = {}
        self._slot_counter = 0
        self.audit_log: Deque[Dict[str, object]] = deque(maxlen=audit_size)

    @contextmanager
    def hold(self, tenant_id: str, sales_point: int, document_type: int) -> Iterator[EmissionSlot]:
        if not tenant_id:
            raise ValueError("tenant_id is required")

        with self._lock_for((tenant_id, sales_point, document_type)):
            slot = EmissionSlot(
                slot_id=self._generate_slot_id(),
                tenant_id=tenant_id,
                sales_point=sales_point,
                document_type=document_type,
                acquired_at=self._clock(),
            )
            self._log("acquire", slot)
            try:
                yield slot
            except BaseException:
                slot.status = "aborted"
                self._log("abort", slot)
                raise
            slot.status = "committed"
            self._log("commit", slot)

    def committed_numbers(self, tenant_id: str, sales_point: int, document_type: int) -> List[int]:
        key = (tenant_id, sales_point, document_type)
        with self._registry_lock:
            return [
                entry["number"]  # type: ignore[misc]
                for entry in self.audit_log
                if entry["action"] == "commit"
                and (entry["tenant_id"], entry["sales_point"], entry["document_type"]) == key
                and entry["number"] is not None
            ]

    def _lock_for(self, key: SlotKey) -> threading.Lock:
        with self._registry_lock:
            return self._locks.setdefault(key, threading.Lock())

    def _generate_slot_id(self) -> str:
        with self._registry_lock:
            self._slot_counter += 1
            return f"slot-{self._slot_counter:08d}"

    def _log(self, action: str, slot: EmissionSlot) -> None:
        entry = {
            "action": action,
            "slot_id": slot.slot_id,
            "tenant_id": slot.tenant_id,
            "sales_point": slot.sales_point,
            "document_type": slot.document_type,
            "number": slot.number,
            "status": slot.status,
            "timestamp": self._clock(),
        }
        with self._registry_lock:
            self.audit_log.append(entry)

