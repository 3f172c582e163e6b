"""
JSON-backed record store for sessions, trades, offers, disputes, fees and
reputation.

All state lives in memory behind one re-entrant lock and is written to disk
after each mutation. Readers get copies; writers go through the update
methods, which apply a partial patch and always refresh `updated_at`.
"""

import copy
import json
import logging
import os
import threading
from typing import Optional, Dict, Any, List, Iterable, Union

from .core import (
    SessionStatus, SESSION_ORDER, TradeStatus, DisputeStatus, OfferType,
    atomic_to_xmr, now_ms,
)
from .models import Session, Trade, Offer, Dispute, PlatformFee, Reputation

log = logging.getLogger(__name__)


class StoreError(ValueError):
    """A write would break a persisted-record invariant."""


class EscrowStore:
    """In-memory record store with optional JSON persistence."""

    def __init__(self, path: Optional[str] = None):
        self.path = os.path.expanduser(path) if path else None
        self._lock = threading.RLock()

        self.sessions: Dict[str, Session] = {}
        self.trades: Dict[str, Trade] = {}
        self.offers: Dict[str, Offer] = {}
        self.disputes: Dict[str, Dispute] = {}
        self.fees: Dict[str, PlatformFee] = {}          # keyed by trade_id
        self.reputations: Dict[str, Reputation] = {}

        if self.path:
            self.load()

    # =========================================================================
    # Persistence
    # =========================================================================

    def save(self):
        """Write all records to disk. No-op for in-memory stores."""
        if not self.path:
            return
        with self._lock:
            data = {
                "sessions": {k: v.to_dict() for k, v in self.sessions.items()},
                "trades": {k: v.to_dict() for k, v in self.trades.items()},
                "offers": {k: v.to_dict() for k, v in self.offers.items()},
                "disputes": {k: v.to_dict() for k, v in self.disputes.items()},
                "fees": {k: v.to_dict() for k, v in self.fees.items()},
                "reputations": {k: v.to_dict() for k, v in self.reputations.items()},
            }
            try:
                directory = os.path.dirname(self.path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                tmp_path = f"{self.path}.tmp"
                with open(tmp_path, "w") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_path, self.path)
            except OSError as e:
                log.error(f"Failed to save escrow db: {e}")

    def load(self):
        """Load records from disk on startup."""
        if not self.path or not os.path.exists(self.path):
            return
        with self._lock:
            try:
                with open(self.path, "r") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                log.error(f"Failed to load escrow db: {e}")
                return

            self.sessions = {k: Session.from_dict(v) for k, v in data.get("sessions", {}).items()}
            self.trades = {k: Trade.from_dict(v) for k, v in data.get("trades", {}).items()}
            self.offers = {k: Offer.from_dict(v) for k, v in data.get("offers", {}).items()}
            self.disputes = {k: Dispute.from_dict(v) for k, v in data.get("disputes", {}).items()}
            self.fees = {k: PlatformFee.from_dict(v) for k, v in data.get("fees", {}).items()}
            self.reputations = {k: Reputation.from_dict(v) for k, v in data.get("reputations", {}).items()}
            log.info(f"Loaded {len(self.sessions)} sessions, {len(self.trades)} trades from {self.path}")

    def _patch(self, record, patch: Dict[str, Any]):
        for key, value in patch.items():
            if not hasattr(record, key):
                raise StoreError(f"Unknown field: {key}")
            setattr(record, key, copy.deepcopy(value))
        record.updated_at = now_ms()

    # =========================================================================
    # Sessions
    # =========================================================================

    def add_session(self, session: Session) -> Session:
        with self._lock:
            if session.session_id in self.sessions:
                raise StoreError(f"Session {session.session_id} already exists")
            self.sessions[session.session_id] = copy.deepcopy(session)
            self.save()
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self.sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def update_session(self, session_id: str, **patch) -> Session:
        """
        Apply a partial patch to a session.

        Status may only move forward and the multisig address is write-once.
        """
        with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                raise KeyError(session_id)

            status = patch.get("status")
            if status is not None and SESSION_ORDER.index(status) < SESSION_ORDER.index(session.status):
                raise StoreError(
                    f"Session {session_id} cannot move back from {session.status.value} to {status.value}"
                )
            address = patch.get("multisig_address")
            if address is not None and session.multisig_address not in (None, address):
                raise StoreError(f"Session {session_id} multisig address already set")

            self._patch(session, patch)
            self.save()
            return copy.deepcopy(session)

    def list_sessions(self, owner_id: Optional[str] = None,
                      status: Optional[SessionStatus] = None) -> List[Session]:
        with self._lock:
            result = [
                copy.deepcopy(s) for s in self.sessions.values()
                if (owner_id is None or s.owner_id == owner_id)
                and (status is None or s.status == status)
            ]
        return sorted(result, key=lambda s: s.created_at, reverse=True)

    # =========================================================================
    # Trades
    # =========================================================================

    def add_trade(self, trade: Trade) -> Trade:
        with self._lock:
            if trade.trade_id in self.trades:
                raise StoreError(f"Trade {trade.trade_id} already exists")
            self.trades[trade.trade_id] = copy.deepcopy(trade)
            self.save()
            return copy.deepcopy(trade)

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        with self._lock:
            trade = self.trades.get(trade_id)
            return copy.deepcopy(trade) if trade else None

    def update_trade(self, trade_id: str, **patch) -> Trade:
        with self._lock:
            trade = self.trades.get(trade_id)
            if trade is None:
                raise KeyError(trade_id)
            session_id = patch.get("multisig_session_id")
            if session_id is not None and trade.multisig_session_id not in (None, session_id):
                raise StoreError(f"Trade {trade_id} is already linked to a multisig session")
            self._patch(trade, patch)
            self.save()
            return copy.deepcopy(trade)

    def transition_trade(self, trade_id: str,
                         expected: Union[TradeStatus, Iterable[TradeStatus]],
                         new: TradeStatus, **patch) -> Optional[Trade]:
        """
        Compare-and-set the trade status.

        Returns the updated trade, or None if the current status is not
        `expected` (someone else already moved it).
        """
        allowed = (expected,) if isinstance(expected, TradeStatus) else tuple(expected)
        with self._lock:
            trade = self.trades.get(trade_id)
            if trade is None or trade.status not in allowed:
                return None
            patch["status"] = new
            return self.update_trade(trade_id, **patch)

    def list_trades(self, user_id: Optional[str] = None,
                    status: Optional[TradeStatus] = None) -> List[Trade]:
        with self._lock:
            result = [
                copy.deepcopy(t) for t in self.trades.values()
                if (user_id is None or user_id in (t.buyer_id, t.seller_id))
                and (status is None or t.status == status)
            ]
        return sorted(result, key=lambda t: t.created_at, reverse=True)

    def complete_release(self, trade_id: str, fee: PlatformFee,
                         tx_ids: List[str]) -> Optional[Trade]:
        """
        Record the platform fee and mark the trade completed in one write.

        Returns None when the trade is not releasing. A fee already recorded
        for the trade is kept as is.
        """
        with self._lock:
            trade = self.trades.get(trade_id)
            if trade is None or trade.status != TradeStatus.RELEASING:
                return None
            if trade_id not in self.fees:
                self.fees[trade_id] = copy.deepcopy(fee)
            else:
                log.warning(f"[{trade_id}] Platform fee already recorded, keeping original")
            return self.update_trade(
                trade_id,
                status=TradeStatus.COMPLETED,
                tx_ids=list(tx_ids),
                completed_at=now_ms(),
            )

    # =========================================================================
    # Offers
    # =========================================================================

    def add_offer(self, offer: Offer) -> Offer:
        with self._lock:
            self.offers[offer.offer_id] = copy.deepcopy(offer)
            self.save()
            return copy.deepcopy(offer)

    def get_offer(self, offer_id: str) -> Optional[Offer]:
        with self._lock:
            offer = self.offers.get(offer_id)
            return copy.deepcopy(offer) if offer else None

    def update_offer(self, offer_id: str, **patch) -> Offer:
        with self._lock:
            offer = self.offers.get(offer_id)
            if offer is None:
                raise KeyError(offer_id)
            self._patch(offer, patch)
            self.save()
            return copy.deepcopy(offer)

    def list_offers(self, active_only: bool = True, user_id: Optional[str] = None,
                    offer_type: Optional[OfferType] = None,
                    currency: Optional[str] = None,
                    country_code: Optional[str] = None,
                    payment_method: Optional[str] = None) -> List[Offer]:
        """
        List offers, newest first.

        Currency and country match case-insensitively; `payment_method`
        matches as a case-insensitive substring.
        """
        with self._lock:
            result = [
                copy.deepcopy(o) for o in self.offers.values()
                if (o.is_active or not active_only)
                and (user_id is None or o.user_id == user_id)
                and (offer_type is None or o.offer_type == offer_type)
                and (currency is None or o.currency.upper() == currency.upper())
                and (country_code is None
                     or (o.country_code or "").upper() == country_code.upper())
                and (payment_method is None or payment_method.lower() in o.payment_method.lower())
            ]
        return sorted(result, key=lambda o: o.created_at, reverse=True)

    # =========================================================================
    # Disputes
    # =========================================================================

    def add_dispute(self, dispute: Dispute) -> Dispute:
        with self._lock:
            if self.active_dispute(dispute.trade_id):
                raise StoreError(f"Trade {dispute.trade_id} already has an active dispute")
            self.disputes[dispute.dispute_id] = copy.deepcopy(dispute)
            self.save()
            return copy.deepcopy(dispute)

    def update_dispute(self, dispute_id: str, **patch) -> Dispute:
        with self._lock:
            dispute = self.disputes.get(dispute_id)
            if dispute is None:
                raise KeyError(dispute_id)
            self._patch(dispute, patch)
            self.save()
            return copy.deepcopy(dispute)

    def active_dispute(self, trade_id: str) -> Optional[Dispute]:
        with self._lock:
            for d in self.disputes.values():
                if d.trade_id == trade_id and d.status != DisputeStatus.RESOLVED:
                    return copy.deepcopy(d)
        return None

    def latest_dispute(self, trade_id: str) -> Optional[Dispute]:
        with self._lock:
            matches = [d for d in self.disputes.values() if d.trade_id == trade_id]
            if not matches:
                return None
            return copy.deepcopy(max(matches, key=lambda d: d.created_at))

    def list_disputes(self, status: Optional[DisputeStatus] = None) -> List[Dispute]:
        with self._lock:
            result = [
                copy.deepcopy(d) for d in self.disputes.values()
                if status is None or d.status == status
            ]
        return sorted(result, key=lambda d: d.created_at, reverse=True)

    # =========================================================================
    # Fees
    # =========================================================================

    def get_fee(self, trade_id: str) -> Optional[PlatformFee]:
        with self._lock:
            fee = self.fees.get(trade_id)
            return copy.deepcopy(fee) if fee else None

    def list_fees(self) -> List[PlatformFee]:
        with self._lock:
            return [copy.deepcopy(f) for f in self.fees.values()]

    # =========================================================================
    # Reputation
    # =========================================================================

    def recalculate_reputation(self, user_id: str) -> Reputation:
        """Recompute a user's counters from their trades."""
        with self._lock:
            trades = [
                t for t in self.trades.values()
                if user_id in (t.buyer_id, t.seller_id) and t.status != TradeStatus.CANCELLED
            ]
            total = len(trades)
            completed = sum(1 for t in trades if t.status == TradeStatus.COMPLETED)
            disputed = sum(1 for t in trades if t.status == TradeStatus.DISPUTED)
            rep = Reputation(
                user_id=user_id,
                total_trades=total,
                completed_trades=completed,
                disputed_trades=disputed,
                success_rate=round(completed / total * 100, 2) if total else 0.0,
            )
            self.reputations[user_id] = rep
            self.save()
            return copy.deepcopy(rep)

    def recalculate_all_reputations(self) -> int:
        with self._lock:
            users = set()
            for t in self.trades.values():
                users.add(t.buyer_id)
                users.add(t.seller_id)
            for user_id in users:
                self.recalculate_reputation(user_id)
        return len(users)

    def get_reputation(self, user_id: str) -> Reputation:
        with self._lock:
            rep = self.reputations.get(user_id)
            return copy.deepcopy(rep) if rep else Reputation(user_id=user_id)

    # =========================================================================
    # Stats
    # =========================================================================

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            by_status = {s.value: 0 for s in TradeStatus}
            volume = 0.0
            fiat_volume = 0.0
            for t in self.trades.values():
                by_status[t.status.value] += 1
                if t.status == TradeStatus.COMPLETED:
                    volume += t.crypto_amount
                    fiat_volume += t.fiat_amount
            fee_atomic = sum(f.amount_atomic for f in self.fees.values())
            return {
                "total_trades": len(self.trades),
                "trades_by_status": by_status,
                "active_offers": sum(1 for o in self.offers.values() if o.is_active),
                "open_disputes": sum(1 for d in self.disputes.values() if d.status != DisputeStatus.RESOLVED),
                "total_volume": volume,
                "total_fiat_volume": fiat_volume,
                "total_fees_atomic": fee_atomic,
                "total_fees": atomic_to_xmr(fee_atomic),
            }
