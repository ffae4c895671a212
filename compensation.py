"""
Compensation log for multi-document writes.

Checkout writes the order, the user record and the user's order back-reference
as separate documents. When one of them fails after the payment order already
exists, the failed write is recorded here and replayed later by the
maintenance task instead of being dropped.
"""
import logging
from typing import Any, Dict

from database import DocumentStore, utcnow
from services import UserService

logger = logging.getLogger(__name__)

ORDER_INSERT = "order_insert"
USER_UPSERT = "user_upsert"
USER_ORDER_REF = "user_order_ref"


class CompensationLog:
    collection = "compensations"

    def __init__(self, store: DocumentStore):
        self.store = store

    def record(self, kind: str, payload: Dict[str, Any], error: Exception) -> None:
        try:
            self.store.create(self.collection, {
                "kind": kind,
                "payload": payload,
                "status": "open",
                "attempts": 0,
                "last_error": str(error),
            })
        except Exception:
            # The store itself is down; the log line is all that is left.
            logger.exception("Could not record %s compensation: %s", kind, payload)
            return
        logger.warning("Recorded %s compensation after error: %s", kind, error)

    def open_entries(self):
        return self.store.get_all(self.collection, where=("status", "==", "open"), order_by=("created_at", "asc"))

    def replay(self) -> Dict[str, int]:
        resolved = failed = 0
        for entry in self.open_entries():
            try:
                self._apply(entry["kind"], entry["payload"])
            except Exception as e:
                failed += 1
                self.store.update(self.collection, entry["id"], {
                    "attempts": entry.get("attempts", 0) + 1,
                    "last_error": str(e),
                })
                logger.warning("Compensation %s (%s) still failing: %s", entry["id"], entry["kind"], e)
                continue
            resolved += 1
            self.store.update(self.collection, entry["id"], {"status": "resolved", "resolved_at": utcnow()})
        if resolved or failed:
            logger.info("Compensation replay: %d resolved, %d failed", resolved, failed)
        return {"resolved": resolved, "failed": failed}

    def _apply(self, kind: str, payload: Dict[str, Any]) -> None:
        users = UserService(self.store)
        if kind == ORDER_INSERT:
            if self.store.get_by_id("orders", payload["order_id"]) is None:
                self.store.create("orders", payload["document"], doc_id=payload["order_id"])
        elif kind == USER_UPSERT:
            users.upsert(payload["phone_number"], name=payload.get("name"), email=payload.get("email"))
            address = payload.get("address")
            if address:
                users.add_address(payload["phone_number"], **address)
        elif kind == USER_ORDER_REF:
            user = users.get(payload["phone_number"])
            if user is None or payload["order_id"] not in user.get("order_ids", []):
                users.add_order(payload["phone_number"], payload["order_id"])
        else:
            raise ValueError(f"Unknown compensation kind: {kind}")
