"""
escrow - 2-of-3 Multisig Escrow Coordinator

Coordinates peer-to-peer trades escrowed in a 2-of-3 Monero multisig wallet
held by the buyer, the seller and the service.

Usage:
    from escrow import build_services, EscrowConfig

    services = build_services(EscrowConfig.from_env())

    # Open a trade (creates the multisig session)
    trade = services.trades.create_trade(offer_id, taker_id, 150.0, 1.0)

    # Participants relay their blobs
    services.multisig.submit_prepared(trade.multisig_session_id, "participant_a", hex_a)

    # Watch for the deposit
    services.poller.start()
"""

from .core import (
    SessionStatus,
    TradeStatus,
    TradeParty,
    Role,
    OfferType,
    DisputeStatus,
    total_rounds,
    xmr_to_atomic,
    atomic_to_xmr,
    split_fee,
    ATOMIC_UNITS,
    DEFAULT_FEE_RATE,
)
from .config import EscrowConfig
from .errors import (
    EscrowError,
    PhaseMismatch,
    RoleViolation,
    CapabilityFailure,
    NotFound,
    InsufficientFunds,
    InvalidRequest,
)
from .models import Session, RoleSlots, Trade, Offer, Dispute, PlatformFee, Reputation, ReleasePlan
from .store import EscrowStore, StoreError
from .locks import SessionLocks
from .wallet.monero import MoneroWalletClient, MoneroConfig, WalletError, WalletTimeout
from .multisig.coordinator import MultisigCoordinator
from .trade.lifecycle import TradeCoordinator
from .trade.deposits import DepositPoller, DepositStatus
from .notifications import NotificationService
from .services import EscrowServices, build_services, configure_services, get_services

__version__ = "0.1.0"
__all__ = [
    # Core types
    "SessionStatus",
    "TradeStatus",
    "TradeParty",
    "Role",
    "OfferType",
    "DisputeStatus",
    # Utilities
    "total_rounds",
    "xmr_to_atomic",
    "atomic_to_xmr",
    "split_fee",
    "ATOMIC_UNITS",
    "DEFAULT_FEE_RATE",
    # Config and errors
    "EscrowConfig",
    "EscrowError",
    "PhaseMismatch",
    "RoleViolation",
    "CapabilityFailure",
    "NotFound",
    "InsufficientFunds",
    "InvalidRequest",
    # Records
    "Session",
    "RoleSlots",
    "Trade",
    "Offer",
    "Dispute",
    "PlatformFee",
    "Reputation",
    "ReleasePlan",
    "EscrowStore",
    "StoreError",
    "SessionLocks",
    # Wallet
    "MoneroWalletClient",
    "MoneroConfig",
    "WalletError",
    "WalletTimeout",
    # Coordinators
    "MultisigCoordinator",
    "TradeCoordinator",
    "DepositPoller",
    "DepositStatus",
    "NotificationService",
    "EscrowServices",
    "build_services",
    "configure_services",
    "get_services",
]
