"""
Service wiring.

Builds the coordinators around one store, wallet client and lock registry.
The API layer reads the process-wide instance through `get_services()`.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import EscrowConfig
from .locks import SessionLocks
from .multisig.coordinator import MultisigCoordinator
from .notifications import NotificationService
from .store import EscrowStore
from .trade.deposits import DepositPoller
from .trade.lifecycle import TradeCoordinator
from .wallet.monero import MoneroWalletClient

log = logging.getLogger(__name__)


@dataclass
class EscrowServices:
    config: EscrowConfig
    store: EscrowStore
    wallet: object
    locks: SessionLocks
    notifications: NotificationService
    multisig: MultisigCoordinator
    trades: TradeCoordinator
    poller: DepositPoller


def build_services(config: EscrowConfig = None, wallet=None,
                   store: EscrowStore = None) -> EscrowServices:
    """Wire all components. `wallet` and `store` default to the real ones."""
    config = config or EscrowConfig.from_env()
    store = store if store is not None else EscrowStore(config.db_path)
    wallet = wallet if wallet is not None else MoneroWalletClient(config.monero_config())
    locks = SessionLocks(wait_timeout=config.lock_wait_timeout)
    notifications = NotificationService()

    multisig = MultisigCoordinator(store, wallet, locks, config)
    trades = TradeCoordinator(store, wallet, locks, multisig, notifications, config)
    poller = DepositPoller(store, wallet, locks, multisig, notifications, config)

    log.info(f"Escrow services ready (network={config.network}, fee={config.fee_rate})")
    return EscrowServices(
        config=config,
        store=store,
        wallet=wallet,
        locks=locks,
        notifications=notifications,
        multisig=multisig,
        trades=trades,
        poller=poller,
    )


_services: Optional[EscrowServices] = None


def configure_services(services: Optional[EscrowServices]):
    """Install the process-wide services (server startup, tests)."""
    global _services
    _services = services


def get_services() -> EscrowServices:
    """Get or lazily build the process-wide services from the environment."""
    global _services
    if _services is None:
        _services = build_services()
    return _services
