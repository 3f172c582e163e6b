"""
Request dependencies shared by the route modules.

Authentication happens upstream; the authenticated user id arrives in the
X-User-Id header.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException

from escrow.services import EscrowServices, get_services


def services() -> EscrowServices:
    return get_services()


def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(401, "Missing X-User-Id header")
    return x_user_id


def admin_user(user_id: str = Depends(current_user),
               svc: EscrowServices = Depends(services)) -> str:
    if not svc.config.is_admin(user_id):
        raise HTTPException(403, "Admin access required")
    return user_id
