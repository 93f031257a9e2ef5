from fastapi import HTTPException, status
from motor.motor_asyncio import AsyncIOMotorDatabase
from bson import ObjectId
from bson.errors import InvalidId
import logging

logger = logging.getLogger(__name__)

ROLE_MERCHANT = "admin"
ROLE_SUPER_ADMIN = "superAdmin"


class PermissionChecker:
    """
    Role enforcement for ledger routes.

    RULES:
    1. User must be authenticated and exist in `users`
    2. User must not be deactivated
    3. Merchant routes need role 'admin'; administration needs 'superAdmin'
    4. A merchant only ever sees its own transactions and payouts
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db

    async def get_authenticated_user(self, current_user: dict) -> dict:
        """Load the token's user and normalize _id to user_id"""
        user_id = current_user.get("user_id")

        try:
            user = await self.db.users.find_one({"_id": ObjectId(user_id)})
        except (InvalidId, TypeError):
            user = None

        if not user:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="User not found"
            )

        if user.get("active_status") is False:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="User account is inactive"
            )

        user["user_id"] = str(user.pop("_id"))
        return user

    async def check_merchant_role(self, user: dict):
        if user.get("role") != ROLE_MERCHANT:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Merchant account required for this operation"
            )
        return True

    async def check_super_admin_role(self, user: dict):
        if user.get("role") != ROLE_SUPER_ADMIN:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Super admin role required for this operation"
            )
        return True
