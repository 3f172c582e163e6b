"""
Core types and helpers for the escrow coordinator.
"""

import time
import uuid
from decimal import Decimal, ROUND_FLOOR
from enum import Enum
from typing import Tuple


class SessionStatus(Enum):
    """Multisig setup phases. Only ever advance."""
    PREPARING = "preparing"     # Collecting prepare_multisig blobs
    MAKING = "making"           # Collecting make_multisig blobs
    EXCHANGING = "exchanging"   # Key exchange rounds
    READY = "ready"             # Shared address known, wallet usable


SESSION_ORDER = [
    SessionStatus.PREPARING,
    SessionStatus.MAKING,
    SessionStatus.EXCHANGING,
    SessionStatus.READY,
]


class Role(Enum):
    """Multisig participant roles."""
    SERVICE = "service"
    PARTICIPANT_A = "participant_a"     # buyer
    PARTICIPANT_B = "participant_b"     # seller


EXTERNAL_ROLES = (Role.PARTICIPANT_A, Role.PARTICIPANT_B)


class TradeStatus(Enum):
    """Trade lifecycle states."""
    PENDING = "pending"                     # Waiting for escrow deposit
    FUNDED = "funded"                       # Deposit unlocked in multisig
    PAYMENT_SENT = "payment_sent"           # Buyer sent fiat
    PAYMENT_CONFIRMED = "payment_confirmed" # Admin confirmed fiat receipt
    RELEASING = "releasing"                 # Co-sign + broadcast in flight
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


TERMINAL_TRADE_STATES = (TradeStatus.COMPLETED, TradeStatus.CANCELLED)


class TradeParty(Enum):
    BUYER = "buyer"
    SELLER = "seller"


class OfferType(Enum):
    BUY = "buy"     # Offer owner buys crypto
    SELL = "sell"   # Offer owner sells crypto


class DisputeStatus(Enum):
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"


# =============================================================================
# Constants
# =============================================================================

ATOMIC_UNITS = 10 ** 12          # 1 XMR = 10^12 piconero
DEFAULT_FEE_RATE = 0.005         # 0.5% platform fee
DEFAULT_THRESHOLD = 2
DEFAULT_PARTICIPANTS = 3


def total_rounds(total_participants: int, threshold: int) -> int:
    """Number of key exchange rounds for an M-of-N wallet (N - M + 1)."""
    if threshold < 1 or threshold > total_participants:
        raise ValueError(f"Invalid multisig shape: {threshold}-of-{total_participants}")
    return total_participants - threshold + 1


def xmr_to_atomic(amount) -> int:
    """Convert display units to atomic units, rounding down."""
    value = Decimal(str(amount)) * ATOMIC_UNITS
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def atomic_to_xmr(atomic: int) -> float:
    """Convert atomic units to display units."""
    return float(Decimal(atomic) / ATOMIC_UNITS)


def split_fee(amount_atomic: int, fee_rate: float) -> Tuple[int, int]:
    """
    Split an escrowed amount into (payout, fee), both in atomic units.

    The fee is rounded down so payout + fee == amount always holds.
    """
    fee = int((Decimal(amount_atomic) * Decimal(str(fee_rate))).to_integral_value(rounding=ROUND_FLOOR))
    return amount_atomic - fee, fee


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"
