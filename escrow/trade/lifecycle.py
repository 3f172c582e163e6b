"""
Trade lifecycle coordinator.

    pending -> funded -> payment_sent -> (payment_confirmed) -> releasing -> completed
                   \\________________ disputed / cancelled _______________/

Release is two-phase: the seller (or the party chosen by arbitration) gets
an unsigned payout from `initiate_release`, signs it client-side, and hands
the partially signed blob to `finalize_release`, where the service adds the
second signature and broadcasts.
"""

import logging
from typing import Optional, Dict, Any, List

from ..config import EscrowConfig
from ..core import (
    TradeStatus, TradeParty, OfferType, DisputeStatus, Role, SessionStatus,
    xmr_to_atomic, atomic_to_xmr, split_fee, now_ms, new_id,
)
from ..errors import (
    PhaseMismatch, RoleViolation, NotFound, InvalidRequest,
    InsufficientFunds, CapabilityFailure,
)
from ..locks import SessionLocks
from ..models import Trade, Offer, Dispute, PlatformFee, ReleasePlan, Session
from ..multisig.coordinator import MultisigCoordinator
from ..notifications import NotificationService
from ..store import EscrowStore
from ..wallet.monero import WalletError

log = logging.getLogger(__name__)

# States a plan may be finalized from (normal path and arbitration path)
RELEASABLE_STATES = (
    TradeStatus.PAYMENT_SENT,
    TradeStatus.PAYMENT_CONFIRMED,
    TradeStatus.DISPUTED,
)

NON_DISPUTABLE_STATES = (
    TradeStatus.COMPLETED,
    TradeStatus.DISPUTED,
    TradeStatus.CANCELLED,
)

# Admin overrides may not fake a release
ADMIN_FORBIDDEN_TARGETS = (TradeStatus.RELEASING, TradeStatus.COMPLETED)

OFFER_EDITABLE_FIELDS = (
    "payment_method", "price", "currency", "min_limit", "max_limit",
    "description", "country_code", "is_active",
)


def _parse(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidRequest(f"Invalid {label}: {value}")


class TradeCoordinator:
    """Trade state machine, release flow and arbitration."""

    def __init__(self, store: EscrowStore, wallet, locks: SessionLocks,
                 multisig: MultisigCoordinator, notifications: NotificationService,
                 config: EscrowConfig = None):
        self.store = store
        self.wallet = wallet
        self.locks = locks
        self.multisig = multisig
        self.notifications = notifications
        self.config = config or EscrowConfig()

    # =========================================================================
    # Lookups
    # =========================================================================

    def _trade(self, trade_id: str) -> Trade:
        trade = self.store.get_trade(trade_id)
        if trade is None:
            raise NotFound(f"Trade {trade_id} not found")
        return trade

    def _party(self, trade: Trade, user_id: str, required: Optional[TradeParty] = None) -> str:
        party = trade.party_of(user_id)
        if party is None:
            raise RoleViolation("Not a participant in this trade")
        if required is not None and party != required.value:
            raise RoleViolation(f"Only the {required.value} can do this")
        return party

    @staticmethod
    def _require_status(trade: Trade, allowed, action: str):
        if trade.status not in allowed:
            raise PhaseMismatch(
                f"Cannot {action} while trade is {trade.status.value}",
                current_status=trade.status.value,
            )

    def _ready_session(self, trade: Trade) -> Session:
        session = self.store.get_session(trade.multisig_session_id) if trade.multisig_session_id else None
        if session is None:
            raise InvalidRequest("Trade has no multisig session")
        if session.status != SessionStatus.READY:
            raise InvalidRequest(
                f"Multisig session is not ready ({session.status.value})",
                current_status=session.status.value,
            )
        return session

    def _refresh_reputation(self, trade: Trade):
        self.store.recalculate_reputation(trade.buyer_id)
        self.store.recalculate_reputation(trade.seller_id)

    def get_trade(self, trade_id: str, user_id: str, is_admin: bool = False) -> Trade:
        trade = self._trade(trade_id)
        if not is_admin:
            self._party(trade, user_id)
        return trade

    def list_trades(self, user_id: Optional[str] = None,
                    status: Optional[str] = None) -> List[Trade]:
        status = _parse(TradeStatus, status, "status") if status else None
        return self.store.list_trades(user_id=user_id, status=status)

    # =========================================================================
    # Offers
    # =========================================================================

    @staticmethod
    def _check_offer_terms(payment_method, price, min_limit, max_limit):
        if not payment_method:
            raise InvalidRequest("Payment method is required")
        if price is None or price <= 0:
            raise InvalidRequest("Price must be positive")
        if min_limit is not None and max_limit is not None and min_limit > max_limit:
            raise InvalidRequest("Minimum limit exceeds maximum limit")

    def create_offer(self, user_id: str, offer_type: str, payment_method: str,
                     price: float, currency: str = "USD",
                     min_limit: Optional[float] = None,
                     max_limit: Optional[float] = None,
                     description: Optional[str] = None,
                     country_code: Optional[str] = None) -> Offer:
        offer_type = _parse(OfferType, offer_type, "offer type")
        self._check_offer_terms(payment_method, price, min_limit, max_limit)

        offer = Offer(
            offer_id=new_id("offer"),
            user_id=user_id,
            offer_type=offer_type,
            payment_method=payment_method,
            price=price,
            currency=currency,
            min_limit=min_limit,
            max_limit=max_limit,
            description=description,
            country_code=country_code,
        )
        log.info(f"Offer {offer.offer_id} created by {user_id} ({offer_type.value})")
        return self.store.add_offer(offer)

    def get_offer(self, offer_id: str) -> Offer:
        offer = self.store.get_offer(offer_id)
        if offer is None:
            raise NotFound(f"Offer {offer_id} not found")
        return offer

    def list_offers(self, offer_type: Optional[str] = None,
                    currency: Optional[str] = None,
                    payment_method: Optional[str] = None,
                    country_code: Optional[str] = None) -> List[Offer]:
        """Active offers matching every given filter."""
        offer_type = _parse(OfferType, offer_type, "offer type") if offer_type else None
        return self.store.list_offers(
            active_only=True,
            offer_type=offer_type,
            currency=currency or None,
            payment_method=payment_method or None,
            country_code=country_code or None,
        )

    def my_offers(self, user_id: str) -> List[Offer]:
        """All of a user's offers, inactive ones included."""
        return self.store.list_offers(active_only=False, user_id=user_id)

    def update_offer(self, offer_id: str, user_id: str, **changes) -> Offer:
        """
        Change an offer's terms. Only the owner may edit.

        Limits and price are validated against the merged result, so a
        single-field edit cannot leave min above max.
        """
        offer = self.get_offer(offer_id)
        if offer.user_id != user_id:
            raise RoleViolation("Only the offer owner can edit it")
        unknown = set(changes) - set(OFFER_EDITABLE_FIELDS)
        if unknown:
            raise InvalidRequest(f"Cannot edit offer fields: {', '.join(sorted(unknown))}")
        if not changes:
            return offer

        merged = {name: changes.get(name, getattr(offer, name)) for name in OFFER_EDITABLE_FIELDS}
        self._check_offer_terms(
            merged["payment_method"], merged["price"], merged["min_limit"], merged["max_limit"],
        )
        if not merged["currency"]:
            raise InvalidRequest("Currency is required")
        if merged["is_active"] is None:
            raise InvalidRequest("is_active cannot be null")

        updated = self.store.update_offer(offer_id, **changes)
        log.info(f"Offer {offer_id} updated by {user_id}: {', '.join(sorted(changes))}")
        return updated

    def deactivate_offer(self, offer_id: str, user_id: str, is_admin: bool = False) -> Offer:
        offer = self.get_offer(offer_id)
        if offer.user_id != user_id and not is_admin:
            raise RoleViolation("Only the offer owner can remove it")
        return self.store.update_offer(offer_id, is_active=False)

    # =========================================================================
    # Trade creation
    # =========================================================================

    def create_trade(self, offer_id: str, taker_id: str,
                     fiat_amount: float, crypto_amount: float) -> Trade:
        """
        Open a trade against an offer.

        The multisig session is created first; the trade is only persisted
        once its session exists.
        """
        offer = self.get_offer(offer_id)
        if not offer.is_active:
            raise InvalidRequest("Offer is not active")
        if offer.user_id == taker_id:
            raise InvalidRequest("Cannot trade with your own offer")
        if fiat_amount <= 0 or crypto_amount <= 0:
            raise InvalidRequest("Amounts must be positive")
        if offer.min_limit is not None and fiat_amount < offer.min_limit:
            raise InvalidRequest(f"Amount below offer minimum ({offer.min_limit})")
        if offer.max_limit is not None and fiat_amount > offer.max_limit:
            raise InvalidRequest(f"Amount above offer maximum ({offer.max_limit})")
        if xmr_to_atomic(crypto_amount) <= 0:
            raise InvalidRequest("Crypto amount too small")

        if offer.offer_type == OfferType.SELL:
            buyer_id, seller_id = taker_id, offer.user_id
        else:
            buyer_id, seller_id = offer.user_id, taker_id

        session = self.multisig.create_session(
            owner_id=taker_id,
            bindings={Role.PARTICIPANT_A: buyer_id, Role.PARTICIPANT_B: seller_id},
        )

        trade = self.store.add_trade(Trade(
            trade_id=new_id("trade"),
            offer_id=offer_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            fiat_amount=fiat_amount,
            crypto_amount=crypto_amount,
            multisig_session_id=session.session_id,
        ))
        log.info(f"[{trade.trade_id}] Trade created: {crypto_amount} XMR, session {session.session_id}")
        self.notifications.notify_trade_participants(
            trade, "trade_created", f"New trade for {crypto_amount} XMR", exclude=taker_id,
        )
        return trade

    # =========================================================================
    # Payment
    # =========================================================================

    def mark_payment_sent(self, trade_id: str, user_id: str) -> Trade:
        trade = self._trade(trade_id)
        self._party(trade, user_id, TradeParty.BUYER)
        self._require_status(trade, (TradeStatus.FUNDED,), "mark payment sent")

        updated = self.store.transition_trade(trade_id, TradeStatus.FUNDED, TradeStatus.PAYMENT_SENT)
        if updated is None:
            current = self._trade(trade_id)
            raise PhaseMismatch("Trade status changed, retry", current_status=current.status.value)

        log.info(f"[{trade_id}] Buyer marked payment sent")
        self.notifications.notify(
            trade.seller_id, "payment_sent", "Buyer marked the fiat payment as sent",
            trade_id=trade_id,
        )
        return updated

    # =========================================================================
    # Release
    # =========================================================================

    def _prepare_release(self, trade: Trade, destination: str, signer: str,
                         prepared_by: str) -> ReleasePlan:
        """Check the confirmed balance and build the unsigned payout."""
        if not destination or not destination.strip():
            raise InvalidRequest("Recipient address is required")
        session = self._ready_session(trade)
        session_id = session.session_id

        amount_atomic = xmr_to_atomic(trade.crypto_amount)
        payout_atomic, fee_atomic = split_fee(amount_atomic, self.config.fee_rate)

        with self.locks.hold(session_id):
            if self.multisig.reanchor_pending(session):
                session = self.multisig.ensure_reanchored(session_id)
            try:
                with self.wallet.opened(session.service_wallet_path, sync=True) as handle:
                    _, unlocked = self.wallet.balance(handle)
                    if unlocked < amount_atomic:
                        raise InsufficientFunds(
                            f"Insufficient unlocked balance: have {atomic_to_xmr(unlocked)} XMR, "
                            f"need {trade.crypto_amount} XMR"
                        )
                    unsigned = self.wallet.create_transaction(handle, destination.strip(), payout_atomic)
            except WalletError as e:
                log.error(f"[{trade.trade_id}] Release preparation failed: {e}")
                raise CapabilityFailure(f"Could not build release transaction: {e}")

            plan = ReleasePlan(
                destination=destination.strip(),
                payout_atomic=payout_atomic,
                fee_atomic=fee_atomic,
                fee_rate=self.config.fee_rate,
                unsigned_tx=unsigned,
                signer=signer,
                prepared_by=prepared_by,
            )
            updated = self.store.transition_trade(trade.trade_id, trade.status, trade.status, release=plan)
            if updated is None:
                current = self._trade(trade.trade_id)
                raise PhaseMismatch("Trade status changed, retry", current_status=current.status.value)

        log.info(f"[{trade.trade_id}] Release prepared: {atomic_to_xmr(payout_atomic)} XMR "
                 f"to {plan.destination[:12]}..., fee {atomic_to_xmr(fee_atomic)} XMR, signer {signer}")
        return plan

    @staticmethod
    def _plan_view(trade: Trade, plan: ReleasePlan) -> Dict[str, Any]:
        return {
            "success": True,
            "trade_id": trade.trade_id,
            "unsigned_tx": plan.unsigned_tx,
            "trade_amount": trade.crypto_amount,
            "platform_fee": atomic_to_xmr(plan.fee_atomic),
            "recipient_receives": atomic_to_xmr(plan.payout_atomic),
            "fee_rate": plan.fee_rate,
            "recipient_address": plan.destination,
            "signer": plan.signer,
        }

    def initiate_release(self, trade_id: str, user_id: str, destination: str) -> Dict[str, Any]:
        """Seller step 1: build the unsigned payout transaction."""
        trade = self._trade(trade_id)
        self._party(trade, user_id, TradeParty.SELLER)
        self._require_status(trade, (TradeStatus.PAYMENT_SENT,), "initiate release")

        plan = self._prepare_release(trade, destination, TradeParty.SELLER.value, user_id)
        return self._plan_view(trade, plan)

    def _finalizable_plan(self, trade: Trade, user_id: str) -> ReleasePlan:
        party = self._party(trade, user_id)
        if trade.status == TradeStatus.COMPLETED:
            raise PhaseMismatch("Trade already completed", current_status=trade.status.value)
        self._require_status(trade, RELEASABLE_STATES, "finalize release")
        plan = trade.release
        if plan is None:
            raise PhaseMismatch("Release has not been initiated", current_status=trade.status.value)
        if party != plan.signer:
            raise RoleViolation(f"Only the {plan.signer} can finalize this release")
        return plan

    def finalize_release(self, trade_id: str, user_id: str, signed_tx: str) -> Trade:
        """
        Step 2: co-sign the participant-signed payout and broadcast it.

        The platform fee is recorded from the stored plan in the same write
        that completes the trade. A capability failure puts the trade back in
        its previous state so the call can be retried.
        """
        if not signed_tx or not signed_tx.strip():
            raise InvalidRequest("Signed transaction is required")
        trade = self._trade(trade_id)
        self._finalizable_plan(trade, user_id)
        session = self._ready_session(trade)

        with self.locks.hold(session.session_id):
            # Re-read under the lock; a concurrent finalize may have won
            trade = self._trade(trade_id)
            plan = self._finalizable_plan(trade, user_id)
            previous = trade.status
            releasing = self.store.transition_trade(trade_id, previous, TradeStatus.RELEASING)
            if releasing is None:
                current = self._trade(trade_id)
                raise PhaseMismatch("Trade status changed, retry", current_status=current.status.value)

            try:
                with self.wallet.opened(session.service_wallet_path, sync=True) as handle:
                    fully_signed = self.wallet.sign_partial(handle, signed_tx)
                    tx_ids = self.wallet.submit(handle, fully_signed)
            except WalletError as e:
                log.error(f"[{trade_id}] Release co-sign/broadcast failed: {e}")
                self.store.transition_trade(trade_id, TradeStatus.RELEASING, previous)
                raise CapabilityFailure(f"Release failed, retry: {e}", current_status=previous.value)

            fee = PlatformFee(
                fee_id=new_id("fee"),
                trade_id=trade_id,
                amount_atomic=plan.fee_atomic,
                amount=atomic_to_xmr(plan.fee_atomic),
                fee_rate=plan.fee_rate,
                tx_ids=tx_ids,
            )
            completed = self.store.complete_release(trade_id, fee, tx_ids)

        log.info(f"[{trade_id}] Escrow released, tx {', '.join(tx_ids)}")
        self._refresh_reputation(completed)
        self.notifications.notify_trade_participants(
            completed, "escrow_released",
            f"Escrow released: {atomic_to_xmr(plan.payout_atomic)} XMR sent",
            data={"tx_ids": tx_ids},
        )
        return completed

    # =========================================================================
    # Disputes and cancellation
    # =========================================================================

    def open_dispute(self, trade_id: str, user_id: str, reason: str) -> Dispute:
        if not reason or not reason.strip():
            raise InvalidRequest("Dispute reason is required")
        trade = self._trade(trade_id)
        self._party(trade, user_id)
        if trade.status in NON_DISPUTABLE_STATES:
            raise PhaseMismatch(
                f"Cannot dispute a {trade.status.value} trade", current_status=trade.status.value,
            )
        if self.store.active_dispute(trade_id):
            raise PhaseMismatch("Trade already has an open dispute", current_status=trade.status.value)

        # Serialize against an in-flight release on the same wallet
        with self.locks.hold(trade.multisig_session_id or trade_id):
            allowed = [s for s in TradeStatus if s not in NON_DISPUTABLE_STATES]
            disputed = self.store.transition_trade(
                trade_id, allowed, TradeStatus.DISPUTED, release=None,
            )
            if disputed is None:
                current = self._trade(trade_id)
                raise PhaseMismatch(
                    f"Cannot dispute a {current.status.value} trade", current_status=current.status.value,
                )
            dispute = self.store.add_dispute(Dispute(
                dispute_id=new_id("dispute"),
                trade_id=trade_id,
                opened_by=user_id,
                reason=reason.strip(),
            ))

        log.info(f"[{trade_id}] Dispute opened by {user_id}")
        self._refresh_reputation(disputed)
        self.notifications.notify_trade_participants(
            disputed, "dispute_opened", f"Dispute opened: {reason.strip()}",
        )
        return dispute

    def cancel_trade(self, trade_id: str, user_id: str) -> Trade:
        trade = self._trade(trade_id)
        self._party(trade, user_id)
        self._require_status(trade, (TradeStatus.PENDING,), "cancel trade")

        cancelled = self.store.transition_trade(trade_id, TradeStatus.PENDING, TradeStatus.CANCELLED)
        if cancelled is None:
            current = self._trade(trade_id)
            raise PhaseMismatch("Trade status changed, retry", current_status=current.status.value)

        log.info(f"[{trade_id}] Trade cancelled by {user_id}")
        self.notifications.notify_trade_participants(
            cancelled, "trade_cancelled", "Trade was cancelled", exclude=user_id,
        )
        return cancelled

    # =========================================================================
    # Admin
    # =========================================================================

    def admin_update_status(self, trade_id: str, admin_id: str, status: str) -> Trade:
        new = _parse(TradeStatus, status, "status")
        if new in ADMIN_FORBIDDEN_TARGETS:
            raise InvalidRequest(f"Status {new.value} can only be reached through a release")
        trade = self._trade(trade_id)
        if trade.status in (TradeStatus.COMPLETED, TradeStatus.RELEASING):
            raise PhaseMismatch(
                f"Cannot override a {trade.status.value} trade", current_status=trade.status.value,
            )

        with self.locks.hold(trade.multisig_session_id or trade_id):
            patch = {"funded_at": now_ms()} if new == TradeStatus.FUNDED and not trade.funded_at else {}
            updated = self.store.transition_trade(trade_id, trade.status, new, **patch)
            if updated is None:
                current = self._trade(trade_id)
                raise PhaseMismatch("Trade status changed, retry", current_status=current.status.value)

        log.info(f"[{trade_id}] Admin {admin_id} set status {trade.status.value} -> {new.value}")
        self._refresh_reputation(updated)
        self.notifications.notify_trade_participants(
            updated, "status_changed", f"Trade status changed to {new.value}",
        )
        return updated

    def get_dispute(self, trade_id: str) -> Dispute:
        dispute = self.store.latest_dispute(trade_id)
        if dispute is None:
            raise NotFound(f"No dispute for trade {trade_id}")
        return dispute

    def list_disputes(self, status: Optional[str] = None) -> List[Dispute]:
        status = _parse(DisputeStatus, status, "dispute status") if status else None
        return self.store.list_disputes(status=status)

    def resolve_dispute(self, trade_id: str, admin_id: str,
                        status: Optional[str] = None,
                        admin_notes: Optional[str] = None,
                        resolution: Optional[str] = None,
                        recipient: Optional[str] = None) -> Dispute:
        """Update a dispute. Resolving it requires choosing who receives the escrow."""
        dispute = self.get_dispute(trade_id)
        patch: Dict[str, Any] = {}
        if admin_notes is not None:
            patch["admin_notes"] = admin_notes
        if resolution is not None:
            patch["resolution"] = resolution
        if recipient is not None:
            patch["recipient"] = _parse(TradeParty, recipient, "recipient").value

        if status is not None:
            new = _parse(DisputeStatus, status, "dispute status")
            patch["status"] = new
            if new == DisputeStatus.RESOLVED:
                if not patch.get("recipient", dispute.recipient):
                    raise InvalidRequest("Resolving a dispute requires a recipient")
                patch["resolved_by"] = admin_id
                patch["resolved_at"] = now_ms()

        updated = self.store.update_dispute(dispute.dispute_id, **patch)
        log.info(f"[{trade_id}] Dispute {dispute.dispute_id} updated by {admin_id}: {updated.status.value}")
        trade = self._trade(trade_id)
        self.notifications.notify_trade_participants(
            trade, "dispute_updated", f"Dispute is now {updated.status.value}",
        )
        return updated

    def admin_release(self, trade_id: str, admin_id: str, recipient: str,
                      destination: str) -> Dict[str, Any]:
        """
        Arbitrated release: build the payout for the chosen party, who then
        signs and finalizes it like a normal release.
        """
        party = _parse(TradeParty, recipient, "recipient")
        trade = self._trade(trade_id)
        self._require_status(
            trade, (TradeStatus.PAYMENT_CONFIRMED, TradeStatus.DISPUTED), "release escrow",
        )
        if trade.status == TradeStatus.DISPUTED:
            dispute = self.store.latest_dispute(trade_id)
            if dispute is None or dispute.status != DisputeStatus.RESOLVED:
                raise InvalidRequest("Dispute must be resolved before release")
            if dispute.recipient != party.value:
                raise InvalidRequest(f"Dispute was resolved in favour of the {dispute.recipient}")

        plan = self._prepare_release(trade, destination, party.value, admin_id)
        log.info(f"[{trade_id}] Admin {admin_id} prepared release to {party.value}")
        self.notifications.notify(
            trade.user_for(party.value), "release_ready",
            "Escrow release is ready for your signature", trade_id=trade_id,
        )
        return self._plan_view(trade, plan)

    def stats(self) -> Dict[str, Any]:
        return self.store.stats()
