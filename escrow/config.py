"""
Escrow coordinator configuration.

Values come from environment variables; network presets fill the rest.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, List

from .core import DEFAULT_FEE_RATE, DEFAULT_THRESHOLD, DEFAULT_PARTICIPANTS
from .wallet.monero import MoneroConfig

# Public daemons per network
DAEMON_URIS = {
    "stagenet": "https://stagenet.xmr.ditatompel.com",
    "mainnet": "http://node.sethforprivacy.com:18089",
}

# Confirmations before outputs unlock
CONFIRMATIONS = {
    "stagenet": 2,
    "mainnet": 10,
}

# Wallet sync bound (seconds). Mainnet chains take longer to scan.
SYNC_TIMEOUTS = {
    "stagenet": 120,
    "mainnet": 600,
}


def _env_list(name: str) -> List[str]:
    raw = os.environ.get(name, "")
    return [v.strip() for v in raw.split(",") if v.strip()]


@dataclass
class EscrowConfig:
    """Escrow coordinator configuration."""
    network: str = "stagenet"               # stagenet, mainnet
    daemon_uri: Optional[str] = None        # None = network default
    wallet_rpc_url: str = "http://127.0.0.1:18083/json_rpc"
    wallet_rpc_user: Optional[str] = None
    wallet_rpc_password: Optional[str] = None
    wallet_dir: str = "~/.escrow/wallets"   # wallet-rpc --wallet-dir, must be local
    wallet_password: str = "supersecretpassword123"
    db_path: Optional[str] = None           # None = in-memory store

    # Multisig shape
    threshold: int = DEFAULT_THRESHOLD
    total_participants: int = DEFAULT_PARTICIPANTS
    creation_height_buffer: int = 10        # blocks before current height
    reanchor_after_ready: bool = True       # rebuild wallet at creation height once ready

    # Trade economics
    fee_rate: float = DEFAULT_FEE_RATE

    # Timing (seconds)
    poll_interval: int = 60
    rpc_timeout: int = 30
    sync_timeout: Optional[int] = None      # None = network default
    lock_wait_timeout: float = 900.0        # queued callers give up after this

    admin_users: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.network not in DAEMON_URIS:
            raise ValueError(f"Unknown network: {self.network}")
        if self.daemon_uri is None:
            self.daemon_uri = DAEMON_URIS[self.network]
        if self.sync_timeout is None:
            self.sync_timeout = SYNC_TIMEOUTS[self.network]

    @property
    def confirmations(self) -> int:
        return CONFIRMATIONS[self.network]

    def monero_config(self) -> MoneroConfig:
        return MoneroConfig(
            rpc_url=self.wallet_rpc_url,
            daemon_uri=self.daemon_uri,
            rpc_user=self.wallet_rpc_user,
            rpc_password=self.wallet_rpc_password,
            wallet_dir=self.wallet_dir,
            wallet_password=self.wallet_password,
            rpc_timeout=self.rpc_timeout,
            sync_timeout=self.sync_timeout,
            open_timeout=self.lock_wait_timeout,
        )

    def is_admin(self, user_id: Optional[str]) -> bool:
        return bool(user_id) and user_id in self.admin_users

    @classmethod
    def from_env(cls) -> "EscrowConfig":
        """Build config from environment variables."""
        network = os.environ.get("MONERO_NETWORK", "stagenet")
        sync_timeout = os.environ.get("ESCROW_SYNC_TIMEOUT")
        return cls(
            network=network,
            daemon_uri=os.environ.get("MONERO_DAEMON_URI") or None,
            wallet_rpc_url=os.environ.get("MONERO_WALLET_RPC_URL", "http://127.0.0.1:18083/json_rpc"),
            wallet_rpc_user=os.environ.get("MONERO_WALLET_RPC_USER") or None,
            wallet_rpc_password=os.environ.get("MONERO_WALLET_RPC_PASSWORD") or None,
            wallet_dir=os.environ.get("ESCROW_WALLET_DIR", "~/.escrow/wallets"),
            wallet_password=os.environ.get("ESCROW_WALLET_PASSWORD", "supersecretpassword123"),
            db_path=os.path.expanduser(os.environ.get("ESCROW_DB_PATH", "~/.escrow/escrow_db.json")),
            fee_rate=float(os.environ.get("ESCROW_FEE_RATE", DEFAULT_FEE_RATE)),
            poll_interval=int(os.environ.get("ESCROW_POLL_INTERVAL", 60)),
            sync_timeout=int(sync_timeout) if sync_timeout else None,
            lock_wait_timeout=float(os.environ.get("ESCROW_LOCK_WAIT_TIMEOUT", 900)),
            reanchor_after_ready=os.environ.get("ESCROW_REANCHOR", "1") not in ("0", "false", "no"),
            admin_users=_env_list("ESCROW_ADMIN_USERS"),
        )
