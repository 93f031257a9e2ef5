from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Callable, Optional, Dict, Any, List
from fastapi import HTTPException, status
import logging

from core.settlement_clock import utcnow, to_storage

logger = logging.getLogger(__name__)

# Ledger entities only ever move to a terminal status; they are never removed
LEDGER_ENTITY_TYPES = ("TRANSACTION", "PAYOUT", "SETTLEMENT", "PAYOUT_POLICY")

MAX_AUDIT_PAGE = 500


class AuditService:
    """
    Append-only trail of ledger mutations made through the API.

    Each row: who (user_id, merchant_id), what (module, entity, action) and
    the value written. Written after the mutation has persisted, so a failed
    insert is logged and never undoes the ledger change.
    """

    def __init__(self, db: AsyncIOMotorDatabase, clock: Callable[[], datetime] = utcnow):
        self.collection = db.audit_logs
        self.clock = clock

    @staticmethod
    def guard_ledger_delete(entity_type: str, action_type: str):
        if action_type == "DELETE" and entity_type in LEDGER_ENTITY_TYPES:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"{entity_type} records cannot be deleted. Use a status transition instead."
            )

    async def log_action(
        self,
        module_name: str,
        entity_type: str,
        entity_id: str,
        action_type: str,
        user_id: Optional[str],
        merchant_id: Optional[str] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None
    ):
        self.guard_ledger_delete(entity_type, action_type)

        entry = {
            "merchant_id": merchant_id,
            "module_name": module_name,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action_type": action_type,
            "old_value_json": old_value,
            "new_value_json": new_value,
            "user_id": user_id,
            "timestamp": to_storage(self.clock()),
        }

        try:
            await self.collection.insert_one(entry)
        except Exception as e:
            logger.error(f"[AUDIT] Lost audit row {action_type} {entity_type}:{entity_id}: {e}")
            return
        logger.info(f"[AUDIT] {action_type} {entity_type}:{entity_id} by {user_id}")

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        merchant_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Newest first."""
        limit = max(1, min(limit, MAX_AUDIT_PAGE))
        query = {
            key: value for key, value in {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "merchant_id": merchant_id,
            }.items() if value
        }

        cursor = self.collection.find(query).sort("timestamp", -1).limit(limit)
        logs = await cursor.to_list(length=limit)
        for log in logs:
            log["audit_id"] = str(log.pop("_id"))
        return logs
