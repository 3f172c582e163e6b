"""
Offer endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from escrow.models import Offer
from escrow.services import EscrowServices

from routes.deps import services, current_user

router = APIRouter()


class OfferCreateRequest(BaseModel):
    offer_type: str = Field(..., description="buy or sell")
    payment_method: str
    price: float = Field(..., gt=0, description="Fiat per XMR")
    currency: str = "USD"
    min_limit: Optional[float] = Field(None, ge=0)
    max_limit: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    country_code: Optional[str] = None


class OfferUpdateRequest(BaseModel):
    """Partial update; only fields present in the body are applied."""
    payment_method: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    currency: Optional[str] = None
    min_limit: Optional[float] = Field(None, ge=0)
    max_limit: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    country_code: Optional[str] = None
    is_active: Optional[bool] = None


def offer_view(svc: EscrowServices, offer: Offer) -> dict:
    """Offer record plus the owner's trading record."""
    rep = svc.store.get_reputation(offer.user_id)
    data = offer.to_dict()
    data["seller_reputation"] = {
        "total_trades": rep.total_trades,
        "completed_trades": rep.completed_trades,
        "success_rate": rep.success_rate,
    }
    return data


@router.post("/api/offers")
def create_offer(req: OfferCreateRequest,
                 user_id: str = Depends(current_user),
                 svc: EscrowServices = Depends(services)):
    offer = svc.trades.create_offer(
        user_id, req.offer_type, req.payment_method, req.price,
        currency=req.currency, min_limit=req.min_limit, max_limit=req.max_limit,
        description=req.description, country_code=req.country_code,
    )
    return {"success": True, "offer": offer.to_dict()}


@router.get("/api/offers")
def list_offers(type: Optional[str] = Query(None, description="buy or sell"),
                currency: Optional[str] = Query(None),
                payment_method: Optional[str] = Query(None),
                country_code: Optional[str] = Query(None),
                svc: EscrowServices = Depends(services)):
    offers = svc.trades.list_offers(
        offer_type=type, currency=currency,
        payment_method=payment_method, country_code=country_code,
    )
    return {"offers": [offer_view(svc, o) for o in offers], "count": len(offers)}


@router.get("/api/my-offers")
def my_offers(user_id: str = Depends(current_user),
              svc: EscrowServices = Depends(services)):
    offers = svc.trades.my_offers(user_id)
    return {"offers": [o.to_dict() for o in offers], "count": len(offers)}


@router.get("/api/offers/{offer_id}")
def get_offer(offer_id: str, svc: EscrowServices = Depends(services)):
    return {"offer": offer_view(svc, svc.trades.get_offer(offer_id))}


@router.put("/api/offers/{offer_id}")
def update_offer(offer_id: str, req: OfferUpdateRequest,
                 user_id: str = Depends(current_user),
                 svc: EscrowServices = Depends(services)):
    offer = svc.trades.update_offer(offer_id, user_id, **req.model_dump(exclude_unset=True))
    return {"success": True, "offer": offer.to_dict()}


@router.delete("/api/offers/{offer_id}")
def deactivate_offer(offer_id: str,
                     user_id: str = Depends(current_user),
                     svc: EscrowServices = Depends(services)):
    offer = svc.trades.deactivate_offer(offer_id, user_id, is_admin=svc.config.is_admin(user_id))
    return {"success": True, "offer": offer.to_dict()}


@router.get("/api/users/{user_id}/reputation")
def get_reputation(user_id: str, svc: EscrowServices = Depends(services)):
    return svc.store.get_reputation(user_id).to_dict()
