"""
Admin endpoints: overrides, arbitration, arbitrated release, stats and
operator retry of stuck multisig sessions.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from escrow.services import EscrowServices

from routes.deps import services, admin_user
from routes.trades import trade_view

log = logging.getLogger(__name__)

router = APIRouter()


class StatusUpdateRequest(BaseModel):
    status: str


class AdminReleaseRequest(BaseModel):
    recipient: str = Field(..., description="buyer or seller")
    recipient_address: str


class DisputeUpdateRequest(BaseModel):
    status: Optional[str] = Field(None, description="open, investigating or resolved")
    admin_notes: Optional[str] = None
    resolution: Optional[str] = None
    recipient: Optional[str] = Field(None, description="buyer or seller")


@router.get("/api/admin/trades")
def list_all_trades(status: Optional[str] = Query(None),
                    admin_id: str = Depends(admin_user),
                    svc: EscrowServices = Depends(services)):
    trades = svc.trades.list_trades(status=status)
    return {"trades": [trade_view(svc, t) for t in trades], "count": len(trades)}


@router.put("/api/admin/trades/{trade_id}")
def update_trade_status(trade_id: str, req: StatusUpdateRequest,
                        admin_id: str = Depends(admin_user),
                        svc: EscrowServices = Depends(services)):
    trade = svc.trades.admin_update_status(trade_id, admin_id, req.status)
    return {"success": True, "trade": trade_view(svc, trade)}


@router.post("/api/admin/trades/{trade_id}/release-escrow")
def release_escrow(trade_id: str, req: AdminReleaseRequest,
                   admin_id: str = Depends(admin_user),
                   svc: EscrowServices = Depends(services)):
    return svc.trades.admin_release(trade_id, admin_id, req.recipient, req.recipient_address)


@router.get("/api/admin/disputes")
def list_disputes(status: Optional[str] = Query(None),
                  admin_id: str = Depends(admin_user),
                  svc: EscrowServices = Depends(services)):
    disputes = svc.trades.list_disputes(status=status)
    return {"disputes": [d.to_dict() for d in disputes], "count": len(disputes)}


@router.get("/api/admin/disputes/{trade_id}")
def get_dispute(trade_id: str,
                admin_id: str = Depends(admin_user),
                svc: EscrowServices = Depends(services)):
    dispute = svc.trades.get_dispute(trade_id)
    trade = svc.store.get_trade(trade_id)
    return {"dispute": dispute.to_dict(), "trade": trade_view(svc, trade) if trade else None}


@router.put("/api/admin/disputes/{trade_id}")
def update_dispute(trade_id: str, req: DisputeUpdateRequest,
                   admin_id: str = Depends(admin_user),
                   svc: EscrowServices = Depends(services)):
    dispute = svc.trades.resolve_dispute(
        trade_id, admin_id,
        status=req.status,
        admin_notes=req.admin_notes,
        resolution=req.resolution,
        recipient=req.recipient,
    )
    return {"success": True, "dispute": dispute.to_dict()}


@router.get("/api/admin/stats")
def get_stats(admin_id: str = Depends(admin_user),
              svc: EscrowServices = Depends(services)):
    return svc.trades.stats()


@router.post("/api/admin/multisig/{session_id}/retry")
def retry_service_step(session_id: str,
                       admin_id: str = Depends(admin_user),
                       svc: EscrowServices = Depends(services)):
    """Re-run the service's pending multisig step for a stuck session."""
    log.info(f"[{session_id}] Service step retry requested by {admin_id}")
    svc.multisig.retry_service_step(session_id)
    return {"success": True, **svc.multisig.get_status(session_id)}
