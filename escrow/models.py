"""
Persisted records for sessions, trades, offers, disputes and fees.

Records are plain dataclasses. `to_dict()` produces the JSON shape written to
disk and returned by the API; `from_dict()` reverses it.
"""

from dataclasses import dataclass, field, fields, asdict
from enum import Enum
from typing import Optional, Dict, Any, List

from .core import (
    SessionStatus, TradeStatus, DisputeStatus, OfferType, Role,
    DEFAULT_THRESHOLD, DEFAULT_PARTICIPANTS, now_ms,
)


def _plain(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _known(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class RoleSlots:
    """
    Per-role coordination blobs.

    None means "not submitted". The empty string is a real submission: the
    wallet returns "" from the final exchange round.
    """
    prepared_hex: Optional[str] = None
    made_hex: Optional[str] = None
    exchange_hex: Optional[str] = None
    exchange_hex_prev: Optional[str] = None
    user_id: Optional[str] = None       # bound on first external submission


@dataclass
class Session:
    """2-of-3 multisig setup session."""
    session_id: str
    owner_id: Optional[str] = None
    threshold: int = DEFAULT_THRESHOLD
    total_participants: int = DEFAULT_PARTICIPANTS
    status: SessionStatus = SessionStatus.PREPARING
    slots: Dict[str, RoleSlots] = field(default_factory=dict)
    exchange_round: int = 0
    multisig_address: Optional[str] = None
    creation_height: int = 0

    # Service wallet
    service_wallet_path: Optional[str] = None
    service_address: Optional[str] = None   # pre-multisig primary address
    reanchored: bool = False
    reanchored_height: Optional[int] = None
    last_error: Optional[str] = None

    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def __post_init__(self):
        for role in Role:
            self.slots.setdefault(role.value, RoleSlots())

    def slot(self, role: Role) -> RoleSlots:
        return self.slots[role.value]

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        data = _known(cls, data)
        data["status"] = SessionStatus(data.get("status", SessionStatus.PREPARING.value))
        data["slots"] = {
            role: RoleSlots(**_known(RoleSlots, slot))
            for role, slot in (data.get("slots") or {}).items()
        }
        return cls(**data)


@dataclass
class ReleasePlan:
    """Unsigned payout prepared by initiate-release, consumed by finalize."""
    destination: str
    payout_atomic: int
    fee_atomic: int
    fee_rate: float
    unsigned_tx: str
    signer: str                     # TradeParty value allowed to finalize
    prepared_by: Optional[str] = None
    prepared_at: int = field(default_factory=now_ms)


@dataclass
class Trade:
    trade_id: str
    offer_id: str
    buyer_id: str
    seller_id: str
    fiat_amount: float
    crypto_amount: float
    multisig_session_id: Optional[str] = None
    status: TradeStatus = TradeStatus.PENDING
    release: Optional[ReleasePlan] = None
    tx_ids: List[str] = field(default_factory=list)
    funded_at: Optional[int] = None
    completed_at: Optional[int] = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def party_of(self, user_id: Optional[str]) -> Optional[str]:
        """Return "buyer"/"seller" for a participant, else None."""
        if user_id is None:
            return None
        if user_id == self.buyer_id:
            return "buyer"
        if user_id == self.seller_id:
            return "seller"
        return None

    def user_for(self, party: str) -> str:
        return self.buyer_id if party == "buyer" else self.seller_id

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trade":
        data = _known(cls, data)
        data["status"] = TradeStatus(data.get("status", TradeStatus.PENDING.value))
        if data.get("release"):
            data["release"] = ReleasePlan(**_known(ReleasePlan, data["release"]))
        return cls(**data)


@dataclass
class Offer:
    offer_id: str
    user_id: str
    offer_type: OfferType
    payment_method: str
    price: float                    # fiat per XMR
    currency: str = "USD"
    min_limit: Optional[float] = None
    max_limit: Optional[float] = None
    description: Optional[str] = None
    country_code: Optional[str] = None
    is_active: bool = True
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Offer":
        data = _known(cls, data)
        data["offer_type"] = OfferType(data["offer_type"])
        return cls(**data)


@dataclass
class Dispute:
    dispute_id: str
    trade_id: str
    opened_by: str
    reason: str
    status: DisputeStatus = DisputeStatus.OPEN
    admin_notes: Optional[str] = None
    resolution: Optional[str] = None
    recipient: Optional[str] = None     # "buyer" / "seller", set by arbitration
    resolved_by: Optional[str] = None
    resolved_at: Optional[int] = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Dispute":
        data = _known(cls, data)
        data["status"] = DisputeStatus(data.get("status", DisputeStatus.OPEN.value))
        return cls(**data)


@dataclass
class PlatformFee:
    """Fee retained by the service on a completed release. Immutable."""
    fee_id: str
    trade_id: str
    amount_atomic: int
    amount: float
    fee_rate: float
    tx_ids: List[str] = field(default_factory=list)
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlatformFee":
        return cls(**_known(cls, data))


@dataclass
class Reputation:
    user_id: str
    total_trades: int = 0
    completed_trades: int = 0
    disputed_trades: int = 0
    success_rate: float = 0.0
    updated_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reputation":
        return cls(**_known(cls, data))
