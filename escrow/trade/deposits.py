"""
Deposit confirmation poller.

Checks the multisig wallet balance of pending trades and moves a trade to
`funded` once the escrowed amount is unlocked. Runs as a background thread
and on demand; both paths share the per-session lock, so the wallet is
never opened twice at once and each confirmation transitions a trade once.
"""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple

from ..config import EscrowConfig
from ..core import SessionStatus, TradeStatus, xmr_to_atomic, atomic_to_xmr, now_ms
from ..errors import CapabilityFailure, EscrowError, NotFound, PhaseMismatch
from ..locks import SessionLocks
from ..multisig.coordinator import MultisigCoordinator
from ..notifications import NotificationService
from ..store import EscrowStore
from ..wallet.monero import WalletError

log = logging.getLogger(__name__)


@dataclass
class DepositStatus:
    """Balance check result for one multisig wallet."""
    has_deposit: bool       # total balance covers the expected amount
    is_unlocked: bool       # unlocked balance covers the expected amount
    balance: int            # atomic units
    unlocked_balance: int = 0
    expected: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_deposit": self.has_deposit,
            "is_unlocked": self.is_unlocked,
            "balance": atomic_to_xmr(self.balance),
            "unlocked_balance": atomic_to_xmr(self.unlocked_balance),
            "expected": atomic_to_xmr(self.expected),
            "balance_atomic": self.balance,
            "unlocked_balance_atomic": self.unlocked_balance,
        }


class DepositPoller:
    """
    Background service that watches pending trades for their escrow deposit.

    Events go through the notification service ("deposit_detected").
    """

    def __init__(self, store: EscrowStore, wallet, locks: SessionLocks,
                 multisig: MultisigCoordinator, notifications: NotificationService,
                 config: EscrowConfig = None):
        self.store = store
        self.wallet = wallet
        self.locks = locks
        self.multisig = multisig
        self.notifications = notifications
        self.config = config or EscrowConfig()

        # State
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self.last_sweep: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._running

    # =========================================================================
    # Checks
    # =========================================================================

    def check_deposit(self, session_id: str, expected_amount: float) -> DepositStatus:
        """
        Sync the session wallet and compare its balance to `expected_amount`.

        Callers queue on the session lock; each one performs its own fresh
        check once it gets the lock.
        """
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFound(f"Multisig session {session_id} not found")
        if session.status != SessionStatus.READY:
            raise PhaseMismatch(
                f"Multisig session is not ready ({session.status.value})",
                current_status=session.status.value,
            )
        expected = xmr_to_atomic(expected_amount)

        with self.locks.hold(session_id, timeout=self.config.lock_wait_timeout):
            if self.multisig.reanchor_pending(session):
                session = self.multisig.ensure_reanchored(session_id)
            try:
                with self.wallet.opened(session.service_wallet_path, sync=True) as handle:
                    total, unlocked = self.wallet.balance(handle)
            except WalletError as e:
                log.error(f"[{session_id}] Deposit check failed: {e}")
                raise CapabilityFailure(f"Deposit check failed: {e}")

        status = DepositStatus(
            has_deposit=total >= expected,
            is_unlocked=unlocked >= expected,
            balance=total,
            unlocked_balance=unlocked,
            expected=expected,
        )
        log.info(f"[{session_id}] Balance {atomic_to_xmr(total)} XMR "
                 f"(unlocked {atomic_to_xmr(unlocked)}), expected {atomic_to_xmr(expected)}")
        return status

    def check_trade(self, trade_id: str) -> Tuple[DepositStatus, bool]:
        """
        Check one trade's deposit and mark it funded if unlocked.

        Returns (status, funded) where `funded` is True only for the caller
        whose transition actually happened.
        """
        trade = self.store.get_trade(trade_id)
        if trade is None:
            raise NotFound(f"Trade {trade_id} not found")
        if not trade.multisig_session_id:
            raise PhaseMismatch("Trade has no multisig session", current_status=trade.status.value)

        status = self.check_deposit(trade.multisig_session_id, trade.crypto_amount)
        if not status.is_unlocked:
            if status.has_deposit:
                log.info(f"[{trade_id}] Deposit seen, waiting for {self.config.confirmations} confirmations")
            return status, False

        funded = self.store.transition_trade(
            trade_id, TradeStatus.PENDING, TradeStatus.FUNDED, funded_at=now_ms(),
        )
        if funded is None:
            return status, False

        log.info(f"[{trade_id}] Deposit confirmed, trade funded")
        self.notifications.notify_trade_participants(
            funded, "deposit_detected",
            f"Escrow deposit of {funded.crypto_amount} XMR confirmed",
        )
        return status, True

    def sweep(self) -> int:
        """Check every pending trade whose session is ready. Returns trades funded."""
        funded = 0
        for trade in self.store.list_trades(status=TradeStatus.PENDING):
            if not trade.multisig_session_id:
                continue
            session = self.store.get_session(trade.multisig_session_id)
            if session is None or session.status != SessionStatus.READY:
                continue
            try:
                _, changed = self.check_trade(trade.trade_id)
                if changed:
                    funded += 1
            except EscrowError as e:
                log.warning(f"[{trade.trade_id}] Deposit sweep skipped: {e}")
            except Exception as e:
                log.error(f"[{trade.trade_id}] Deposit sweep error: {e}")
        self.last_sweep = now_ms()
        return funded

    # =========================================================================
    # Background loop
    # =========================================================================

    def start(self):
        """Start poller in background thread."""
        if self._running:
            return

        self._running = True
        self._thread = threading.Thread(target=self._watch_loop, daemon=True)
        self._thread.start()
        log.info(f"Deposit poller started (every {self.config.poll_interval}s)")

    def stop(self):
        """Stop poller."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=5)
        log.info("Deposit poller stopped")

    def _watch_loop(self):
        """Main poll loop."""
        last_check = 0

        while self._running:
            now = time.time()

            try:
                if now - last_check >= self.config.poll_interval:
                    funded = self.sweep()
                    if funded:
                        log.info(f"Deposit sweep funded {funded} trade(s)")
                    last_check = now
            except Exception as e:
                log.error(f"Poller error: {e}")

            time.sleep(1)
