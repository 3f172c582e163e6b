"""
Multisig session endpoints.

Participants poll GET /api/multisig/{id} for the peers' blobs and submit
their own for the current phase.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from escrow.services import EscrowServices

from routes.deps import services, current_user

log = logging.getLogger(__name__)

router = APIRouter()


class MultisigSubmitRequest(BaseModel):
    role: str = Field(..., description="participant_a (buyer) or participant_b (seller)")
    multisig_hex: str = Field(..., description="Opaque blob from the participant's wallet")


class ExchangeSubmitRequest(MultisigSubmitRequest):
    exchange_round: Optional[int] = Field(None, ge=0, description="Round the blob belongs to")


@router.post("/api/multisig/sessions")
def create_session(user_id: str = Depends(current_user),
                   svc: EscrowServices = Depends(services)):
    """Create a standalone multisig session."""
    session = svc.multisig.create_session(owner_id=user_id)
    return {"success": True, **svc.multisig.get_status(session.session_id)}


@router.get("/api/multisig/sessions")
def list_sessions(user_id: str = Depends(current_user),
                  svc: EscrowServices = Depends(services)):
    sessions = svc.multisig.list_sessions(owner_id=user_id)
    return {
        "sessions": [svc.multisig.get_status(s.session_id) for s in sessions],
        "count": len(sessions),
    }


@router.get("/api/multisig/{session_id}")
def get_session(session_id: str,
                user_id: str = Depends(current_user),
                svc: EscrowServices = Depends(services)):
    return svc.multisig.get_status(session_id)


@router.post("/api/multisig/{session_id}/prepare")
def submit_prepared(session_id: str, req: MultisigSubmitRequest,
                    user_id: str = Depends(current_user),
                    svc: EscrowServices = Depends(services)):
    svc.multisig.submit_prepared(session_id, req.role, req.multisig_hex, user_id=user_id)
    return {"success": True, **svc.multisig.get_status(session_id)}


@router.post("/api/multisig/{session_id}/make")
def submit_made(session_id: str, req: MultisigSubmitRequest,
                user_id: str = Depends(current_user),
                svc: EscrowServices = Depends(services)):
    svc.multisig.submit_made(session_id, req.role, req.multisig_hex, user_id=user_id)
    return {"success": True, **svc.multisig.get_status(session_id)}


@router.post("/api/multisig/{session_id}/exchange")
def submit_exchange(session_id: str, req: ExchangeSubmitRequest,
                    user_id: str = Depends(current_user),
                    svc: EscrowServices = Depends(services)):
    svc.multisig.submit_exchange(
        session_id, req.role, req.multisig_hex,
        user_id=user_id, exchange_round=req.exchange_round,
    )
    return {"success": True, **svc.multisig.get_status(session_id)}
