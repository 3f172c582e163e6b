"""
Multisig session coordinator.

Drives a 2-of-3 wallet setup between two external participants and the
service wallet:

    preparing -> making -> exchanging (N - M + 1 rounds) -> ready

Participants submit their public blobs over stateless requests; the
coordinator relays them and computes the service's own blobs as soon as
its inputs are complete. Every mutation of a session runs under that
session's lock, so each service step fires at most once per phase/round.
"""

import logging
from typing import Optional, Dict, Any, List, Callable

from ..config import EscrowConfig
from ..core import (
    SessionStatus, Role, EXTERNAL_ROLES, total_rounds, new_id,
)
from ..errors import CapabilityFailure, PhaseMismatch, RoleViolation, NotFound, InvalidRequest
from ..locks import SessionLocks
from ..models import Session, RoleSlots
from ..store import EscrowStore
from ..wallet.monero import WalletError

log = logging.getLogger(__name__)

SERVICE = Role.SERVICE.value


def parse_role(role) -> Role:
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        raise InvalidRequest(f"Unknown role: {role}")


class MultisigCoordinator:
    """Multisig setup state machine."""

    def __init__(self, store: EscrowStore, wallet, locks: SessionLocks,
                 config: EscrowConfig = None):
        self.store = store
        self.wallet = wallet
        self.locks = locks
        self.config = config or EscrowConfig()

    # =========================================================================
    # Helpers
    # =========================================================================

    def get_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFound(f"Multisig session {session_id} not found")
        return session

    @staticmethod
    def _external(role) -> Role:
        role = parse_role(role)
        if role not in EXTERNAL_ROLES:
            raise RoleViolation("The service role is driven by the coordinator")
        return role

    @staticmethod
    def _check_blob(blob, allow_empty: bool = False):
        if not isinstance(blob, str) or (not allow_empty and not blob.strip()):
            raise InvalidRequest("Missing multisig data")

    @staticmethod
    def _require_phase(session: Session, phase: SessionStatus, action: str):
        if session.status != phase:
            raise PhaseMismatch(
                f"Cannot {action} while session is {session.status.value}",
                current_status=session.status.value,
            )

    @staticmethod
    def _filled(session: Session, attr: str, roles=tuple(Role)) -> bool:
        return all(getattr(session.slot(r), attr) is not None for r in roles)

    @staticmethod
    def _bind(session: Session, role: Role, user_id: Optional[str]) -> Dict[str, RoleSlots]:
        """Bind the caller to its role on first submission."""
        slots = session.slots
        if user_id is None:
            return slots
        slot = slots[role.value]
        if slot.user_id is not None and slot.user_id != user_id:
            raise RoleViolation(f"Role {role.value} belongs to another user")
        other = Role.PARTICIPANT_B if role == Role.PARTICIPANT_A else Role.PARTICIPANT_A
        if slots[other.value].user_id == user_id:
            raise RoleViolation("A user can hold only one participant role")
        slot.user_id = user_id
        return slots

    def _service_op(self, session: Session, op: str, fn: Callable):
        """Run `fn(handle)` against the service wallet, mapping wallet failures."""
        try:
            with self.wallet.opened(session.service_wallet_path, sync=False) as handle:
                return fn(handle)
        except WalletError as e:
            log.error(f"[{session.session_id}] Service {op} failed in {session.status.value}: {e}")
            self.store.update_session(session.session_id, last_error=f"{op}: {e}")
            raise CapabilityFailure(f"Service {op} failed: {e}", current_status=session.status.value)

    def rounds(self, session: Session) -> int:
        return total_rounds(session.total_participants, session.threshold)

    def reanchor_pending(self, session: Session) -> bool:
        return (self.config.reanchor_after_ready
                and session.status == SessionStatus.READY
                and not session.reanchored)

    def pending_service_step(self, session: Session) -> Optional[str]:
        """Name of the service step whose inputs are complete but which has not run."""
        if session.status == SessionStatus.PREPARING:
            return "make" if self._filled(session, "prepared_hex") else None
        if session.status == SessionStatus.MAKING:
            return "make" if self._filled(session, "made_hex", EXTERNAL_ROLES) else None
        if session.status == SessionStatus.EXCHANGING:
            return "exchange" if self._filled(session, "exchange_hex", EXTERNAL_ROLES) else None
        if self.reanchor_pending(session):
            return "reanchor"
        return None

    # =========================================================================
    # Session creation
    # =========================================================================

    def create_session(self, owner_id: Optional[str] = None,
                       bindings: Optional[Dict[Role, str]] = None) -> Session:
        """
        Create a session and its service wallet.

        The service wallet is anchored a few blocks below the current chain
        height so later syncs only scan from there. Nothing is persisted if
        the wallet cannot be set up.
        """
        bindings = bindings or {}
        bound = [u for u in bindings.values() if u]
        if len(bound) != len(set(bound)):
            raise InvalidRequest("Participants must be different users")

        session_id = new_id("ms")
        filename = f"escrow_{session_id}"

        try:
            height = self.wallet.daemon_height()
        except WalletError as e:
            log.warning(f"[{session_id}] Could not read daemon height, anchoring at 0: {e}")
            height = 0
        creation_height = max(0, height - self.config.creation_height_buffer)

        wallet_created = False
        try:
            with self.wallet.created(filename) as handle:
                wallet_created = True
                self.wallet.rebuild_from_seed_at_height(handle, creation_height)
                service_address = self.wallet.primary_address(handle)
                prepared = self.wallet.prepare_multisig(handle)
        except WalletError as e:
            log.error(f"[{session_id}] Service wallet setup failed: {e}")
            if wallet_created:
                log.warning(f"[{session_id}] Orphaned wallet file left for cleanup: "
                            f"{self.config.wallet_dir}/{filename}")
            raise CapabilityFailure(f"Could not create service wallet: {e}")

        session = Session(
            session_id=session_id,
            owner_id=owner_id,
            threshold=self.config.threshold,
            total_participants=self.config.total_participants,
            creation_height=creation_height,
            service_wallet_path=filename,
            service_address=service_address,
        )
        session.slot(Role.SERVICE).prepared_hex = prepared
        for role, user_id in bindings.items():
            session.slot(parse_role(role)).user_id = user_id

        session = self.store.add_session(session)
        log.info(f"[{session_id}] Multisig session created (height {creation_height})")
        return session

    def list_sessions(self, owner_id: Optional[str] = None) -> List[Session]:
        return self.store.list_sessions(owner_id=owner_id)

    # =========================================================================
    # Phase 1: prepare
    # =========================================================================

    def submit_prepared(self, session_id: str, role, prepared_hex: str,
                        user_id: Optional[str] = None) -> Session:
        role = self._external(role)
        self._check_blob(prepared_hex)

        with self.locks.hold(session_id):
            session = self.get_session(session_id)
            self._require_phase(session, SessionStatus.PREPARING, "submit prepared data")

            slots = self._bind(session, role, user_id)
            slots[role.value].prepared_hex = prepared_hex
            session = self.store.update_session(session_id, slots=slots)
            log.info(f"[{session_id}] {role.value} submitted prepared data")

            if self._filled(session, "prepared_hex"):
                session = self._advance_to_making(session)
            return session

    def _advance_to_making(self, session: Session) -> Session:
        """Compute the service's made blob; persist it together with the phase change."""
        slots = session.slots
        service = slots[SERVICE]
        if service.made_hex is None:
            peers = [slots[r.value].prepared_hex for r in EXTERNAL_ROLES]
            service.made_hex = self._service_op(
                session, "make_multisig",
                lambda h: self.wallet.make_multisig(h, peers, session.threshold),
            )

        session = self.store.update_session(
            session.session_id, slots=slots, status=SessionStatus.MAKING, last_error=None,
        )
        log.info(f"[{session.session_id}] All prepared, moved to making")
        return session

    # =========================================================================
    # Phase 2: make
    # =========================================================================

    def submit_made(self, session_id: str, role, made_hex: str,
                    user_id: Optional[str] = None) -> Session:
        role = self._external(role)
        self._check_blob(made_hex)

        with self.locks.hold(session_id):
            session = self.get_session(session_id)
            self._require_phase(session, SessionStatus.MAKING, "submit made data")

            slots = self._bind(session, role, user_id)
            slots[role.value].made_hex = made_hex
            session = self.store.update_session(session_id, slots=slots)
            log.info(f"[{session_id}] {role.value} submitted made data")

            return self._advance_made(session)

    def _advance_made(self, session: Session) -> Session:
        slots = session.slots
        if self._filled(session, "made_hex", EXTERNAL_ROLES) and slots[SERVICE].made_hex is None:
            peers = [slots[r.value].prepared_hex for r in EXTERNAL_ROLES]
            slots[SERVICE].made_hex = self._service_op(
                session, "make_multisig",
                lambda h: self.wallet.make_multisig(h, peers, session.threshold),
            )
            session = self.store.update_session(session.session_id, slots=slots, last_error=None)

        if self._filled(session, "made_hex"):
            session = self.store.update_session(
                session.session_id, status=SessionStatus.EXCHANGING, exchange_round=0,
            )
            log.info(f"[{session.session_id}] All made, moved to exchanging")
        return session

    # =========================================================================
    # Phase 3: key exchange rounds
    # =========================================================================

    def submit_exchange(self, session_id: str, role, exchange_hex: str,
                        user_id: Optional[str] = None,
                        exchange_round: Optional[int] = None) -> Session:
        role = self._external(role)
        self._check_blob(exchange_hex, allow_empty=True)

        with self.locks.hold(session_id):
            session = self.get_session(session_id)
            self._require_phase(session, SessionStatus.EXCHANGING, "submit exchange data")
            if exchange_round is not None and exchange_round != session.exchange_round:
                raise PhaseMismatch(
                    f"Round {exchange_round} is not the current round ({session.exchange_round})",
                    current_status=session.status.value,
                )

            slots = self._bind(session, role, user_id)
            slots[role.value].exchange_hex = exchange_hex
            session = self.store.update_session(session_id, slots=slots)
            log.info(f"[{session_id}] {role.value} submitted exchange round {session.exchange_round}")

            return self._advance_exchange(session)

    def _advance_exchange(self, session: Session) -> Session:
        session_id = session.session_id
        current = session.exchange_round
        final = current == self.rounds(session) - 1
        slots = session.slots
        address = None

        if self._filled(session, "exchange_hex", EXTERNAL_ROLES) and slots[SERVICE].exchange_hex is None:
            # Round 0 consumes the made blobs, later rounds the previous round's output
            source = "made_hex" if current == 0 else "exchange_hex_prev"
            peers = [getattr(slots[r.value], source) for r in EXTERNAL_ROLES]

            def run(handle):
                info = self.wallet.exchange_multisig_keys(handle, peers)
                return info, (self.wallet.primary_address(handle) if final else None)

            slots[SERVICE].exchange_hex, address = self._service_op(
                session, f"exchange_multisig_keys round {current}", run,
            )
            session = self.store.update_session(session_id, slots=slots, last_error=None)
            slots = session.slots

        if not self._filled(session, "exchange_hex"):
            return session

        if final:
            if address is None:
                address = self._service_op(session, "get_address", self.wallet.primary_address)
            session = self.store.update_session(
                session_id,
                status=SessionStatus.READY,
                exchange_round=self.rounds(session),
                multisig_address=address,
                last_error=None,
            )
            log.info(f"[{session_id}] Multisig ready: {address}")
            return self._try_reanchor(session)

        for role in Role:
            slot = slots[role.value]
            slot.exchange_hex_prev = slot.exchange_hex
            slot.exchange_hex = None
        session = self.store.update_session(session_id, slots=slots, exchange_round=current + 1)
        log.info(f"[{session_id}] Exchange round {current} complete, now round {current + 1}")
        return session

    # =========================================================================
    # Post-ready wallet reanchor
    # =========================================================================

    def _reanchor_locked(self, session: Session) -> Session:
        if session.status != SessionStatus.READY:
            raise PhaseMismatch("Session is not ready", current_status=session.status.value)
        if not self.reanchor_pending(session):
            return session

        height = session.creation_height
        self._service_op(
            session, "reanchor",
            lambda h: self.wallet.rebuild_from_seed_at_height(h, height),
        )
        session = self.store.update_session(
            session.session_id, reanchored=True, reanchored_height=height, last_error=None,
        )
        log.info(f"[{session.session_id}] Service wallet reanchored at height {height}")
        return session

    def _try_reanchor(self, session: Session) -> Session:
        try:
            return self._reanchor_locked(session)
        except CapabilityFailure as e:
            log.warning(f"[{session.session_id}] Reanchor left pending: {e}")
            return self.get_session(session.session_id)

    def reanchor(self, session_id: str) -> Session:
        """Rebuild the service wallet at the session's creation height. Idempotent."""
        with self.locks.hold(session_id):
            return self._reanchor_locked(self.get_session(session_id))

    def ensure_reanchored(self, session_id: str) -> Session:
        """Attempt a pending reanchor without failing the caller."""
        with self.locks.hold(session_id):
            session = self.get_session(session_id)
            if self.reanchor_pending(session):
                session = self._try_reanchor(session)
            return session

    # =========================================================================
    # Operator retry
    # =========================================================================

    def retry_service_step(self, session_id: str) -> Session:
        """Re-run the pending service step without participants resubmitting."""
        with self.locks.hold(session_id):
            session = self.get_session(session_id)
            step = self.pending_service_step(session)
            if step is None:
                raise PhaseMismatch("No pending service step", current_status=session.status.value)

            log.info(f"[{session_id}] Operator retry: {step} ({session.status.value})")
            if session.status == SessionStatus.PREPARING:
                return self._advance_to_making(session)
            if session.status == SessionStatus.MAKING:
                return self._advance_made(session)
            if session.status == SessionStatus.EXCHANGING:
                return self._advance_exchange(session)
            return self._reanchor_locked(session)

    # =========================================================================
    # Status
    # =========================================================================

    def get_status(self, session_id: str) -> Dict[str, Any]:
        """Read-only projection used by participants to poll and relay."""
        session = self.get_session(session_id)
        roles = {}
        blobs = {"prepared": {}, "made": {}, "exchange": {}, "exchange_prev": {}}
        for role in Role:
            slot = session.slot(role)
            roles[role.value] = {
                "user_id": slot.user_id,
                "prepared": slot.prepared_hex is not None,
                "made": slot.made_hex is not None,
                "exchanged": slot.exchange_hex is not None,
            }
            blobs["prepared"][role.value] = slot.prepared_hex
            blobs["made"][role.value] = slot.made_hex
            blobs["exchange"][role.value] = slot.exchange_hex
            blobs["exchange_prev"][role.value] = slot.exchange_hex_prev

        return {
            "session_id": session.session_id,
            "status": session.status.value,
            "threshold": session.threshold,
            "total_participants": session.total_participants,
            "exchange_round": session.exchange_round,
            "total_rounds": self.rounds(session),
            "roles": roles,
            "blobs": blobs,
            "multisig_address": session.multisig_address,
            "creation_height": session.creation_height,
            "reanchor_pending": self.reanchor_pending(session),
            "pending_service_step": self.pending_service_step(session),
            "last_error": session.last_error,
            "created_at": session.created_at,
            "updated_at": session.updated_at,
        }
