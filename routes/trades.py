"""
Trade lifecycle endpoints for buyers and sellers.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from escrow.models import Trade
from escrow.services import EscrowServices

from routes.deps import services, current_user

log = logging.getLogger(__name__)

router = APIRouter()


class TradeCreateRequest(BaseModel):
    offer_id: str
    fiat_amount: float = Field(..., gt=0)
    crypto_amount: float = Field(..., gt=0, description="XMR to escrow")


class InitiateReleaseRequest(BaseModel):
    recipient_address: str = Field(..., description="Payout destination")


class FinalizeReleaseRequest(BaseModel):
    signed_tx: str = Field(..., description="Release tx set signed by the releasing party")


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1)


def trade_view(svc: EscrowServices, trade: Trade) -> dict:
    data = trade.to_dict()
    release = data.pop("release", None)
    data["release_pending"] = release is not None
    if release:
        data["release"] = {
            "recipient_address": release["destination"],
            "signer": release["signer"],
            "unsigned_tx": release["unsigned_tx"],
            "prepared_at": release["prepared_at"],
        }
    if trade.multisig_session_id:
        session = svc.store.get_session(trade.multisig_session_id)
        if session:
            data["multisig"] = {
                "session_id": session.session_id,
                "status": session.status.value,
                "address": session.multisig_address,
            }
    fee = svc.store.get_fee(trade.trade_id)
    data["platform_fee"] = fee.amount if fee else None
    return data


@router.post("/api/trades")
def create_trade(req: TradeCreateRequest,
                 user_id: str = Depends(current_user),
                 svc: EscrowServices = Depends(services)):
    trade = svc.trades.create_trade(req.offer_id, user_id, req.fiat_amount, req.crypto_amount)
    return {"success": True, "trade": trade_view(svc, trade)}


@router.get("/api/trades")
def list_trades(status: Optional[str] = Query(None),
                user_id: str = Depends(current_user),
                svc: EscrowServices = Depends(services)):
    trades = svc.trades.list_trades(user_id=user_id, status=status)
    return {"trades": [trade_view(svc, t) for t in trades], "count": len(trades)}


@router.get("/api/trades/{trade_id}")
def get_trade(trade_id: str,
              user_id: str = Depends(current_user),
              svc: EscrowServices = Depends(services)):
    trade = svc.trades.get_trade(trade_id, user_id, is_admin=svc.config.is_admin(user_id))
    return {"trade": trade_view(svc, trade)}


@router.post("/api/trades/{trade_id}/check-deposit")
def check_deposit(trade_id: str,
                  user_id: str = Depends(current_user),
                  svc: EscrowServices = Depends(services)):
    """On-demand deposit check. Shares the lock with the background poller."""
    svc.trades.get_trade(trade_id, user_id, is_admin=svc.config.is_admin(user_id))
    status, funded = svc.poller.check_trade(trade_id)
    trade = svc.store.get_trade(trade_id)
    return {
        "success": True,
        "deposit": status.to_dict(),
        "funded": funded,
        "status": trade.status.value,
    }


@router.post("/api/trades/{trade_id}/mark-payment-sent")
def mark_payment_sent(trade_id: str,
                      user_id: str = Depends(current_user),
                      svc: EscrowServices = Depends(services)):
    trade = svc.trades.mark_payment_sent(trade_id, user_id)
    return {"success": True, "trade": trade_view(svc, trade)}


@router.post("/api/trades/{trade_id}/initiate-release")
def initiate_release(trade_id: str, req: InitiateReleaseRequest,
                     user_id: str = Depends(current_user),
                     svc: EscrowServices = Depends(services)):
    return svc.trades.initiate_release(trade_id, user_id, req.recipient_address)


@router.post("/api/trades/{trade_id}/finalize-release")
def finalize_release(trade_id: str, req: FinalizeReleaseRequest,
                     user_id: str = Depends(current_user),
                     svc: EscrowServices = Depends(services)):
    trade = svc.trades.finalize_release(trade_id, user_id, req.signed_tx)
    return {"success": True, "tx_ids": trade.tx_ids, "trade": trade_view(svc, trade)}


@router.post("/api/trades/{trade_id}/dispute")
def open_dispute(trade_id: str, req: DisputeRequest,
                 user_id: str = Depends(current_user),
                 svc: EscrowServices = Depends(services)):
    dispute = svc.trades.open_dispute(trade_id, user_id, req.reason)
    return {"success": True, "dispute": dispute.to_dict()}


@router.post("/api/trades/{trade_id}/cancel")
def cancel_trade(trade_id: str,
                 user_id: str = Depends(current_user),
                 svc: EscrowServices = Depends(services)):
    trade = svc.trades.cancel_trade(trade_id, user_id)
    return {"success": True, "trade": trade_view(svc, trade)}


@router.get("/api/notifications")
def list_notifications(limit: int = Query(50, ge=1, le=500),
                       user_id: str = Depends(current_user),
                       svc: EscrowServices = Depends(services)):
    events = svc.notifications.recent(user_id=user_id, limit=limit)
    return {"notifications": events, "count": len(events)}
