from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, user_id_from_payload
from models import OrgRole
from database import database
from utils.errors import AccessDeniedError

logger = logging.getLogger(__name__)

ADMIN_ROLES = {OrgRole.OWNER.value, OrgRole.ADMIN.value}

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload or not user_id_from_payload(payload):
        return None

    return {**payload, "user_id": user_id_from_payload(payload)}

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )
    return user

async def get_org_role(user_id: str, organization_id: str) -> Optional[str]:
    db = database.get_db()
    membership = await db.organization_members.find_one(
        {"organizationId": organization_id, "userId": user_id},
        {"_id": 0, "role": 1}
    )
    return membership.get("role") if membership else None

async def require_org_member(user: dict, organization_id: str) -> str:
    """Require membership of the organization; returns the member's role."""
    role = await get_org_role(user["user_id"], organization_id)
    if not role:
        logger.info(f"User {user['user_id']} denied access to org {organization_id}")
        raise AccessDeniedError("Not a member of this organization")
    return role

async def require_org_admin(user: dict, organization_id: str) -> str:
    """Require owner or admin role in the organization."""
    role = await require_org_member(user, organization_id)
    if role not in ADMIN_ROLES:
        raise AccessDeniedError("Admin access required")
    return role
