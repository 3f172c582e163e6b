"""
Monero wallet RPC client for the escrow coordinator.

Talks JSON-RPC to monero-wallet-rpc (one open wallet at a time) and to the
daemon for chain height. Every call is bounded by a timeout; wallet sync uses
the longer sync timeout.
"""

import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Tuple

import httpx

log = logging.getLogger(__name__)


class WalletError(RuntimeError):
    """Wallet RPC call failed."""


class WalletTimeout(WalletError):
    """Wallet RPC call did not finish in time."""


@dataclass
class MoneroConfig:
    """monero-wallet-rpc connection configuration."""
    rpc_url: str = "http://127.0.0.1:18083/json_rpc"
    daemon_uri: str = "https://stagenet.xmr.ditatompel.com"
    rpc_user: Optional[str] = None
    rpc_password: Optional[str] = None
    # Must be the --wallet-dir of wallet-rpc on a filesystem this process
    # shares; rebuilds move wallet files here directly. A remote wallet-rpc
    # makes rebuilds fail (the wallet file still exists).
    wallet_dir: str = "~/.escrow/wallets"
    wallet_password: str = ""
    rpc_timeout: int = 30                   # seconds
    sync_timeout: int = 120                 # seconds
    open_timeout: float = 900.0             # wait for the single wallet slot


@dataclass
class WalletHandle:
    """An open wallet inside wallet-rpc."""
    filename: str
    open: bool = True


class MoneroWalletClient:
    """
    monero-wallet-rpc client.

    Provides access to:
    - Wallet lifecycle (create, open + sync, close, rebuild at height)
    - Multisig setup (prepare, make, exchange keys)
    - Multisig spending (create, partially sign, submit)
    - Balances and heights

    wallet-rpc holds a single open wallet, so the span between open and
    close is serialized across the whole process. Open and close must run on
    the same thread; prefer `opened()`.
    """

    def __init__(self, config: MoneroConfig, transport: Optional[httpx.BaseTransport] = None):
        self.config = config
        auth = None
        if config.rpc_user:
            auth = httpx.DigestAuth(config.rpc_user, config.rpc_password or "")
        self._http = httpx.Client(auth=auth, transport=transport, timeout=config.rpc_timeout)
        self._slot = threading.RLock()

    def close_client(self):
        self._http.close()

    # =========================================================================
    # Transport
    # =========================================================================

    def _post(self, url: str, method: str, params: Optional[Dict[str, Any]],
              timeout: Optional[float]) -> Any:
        payload = {"jsonrpc": "2.0", "id": "0", "method": method}
        if params is not None:
            payload["params"] = params

        try:
            response = self._http.post(url, json=payload, timeout=timeout or self.config.rpc_timeout)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException:
            log.error(f"Wallet RPC timeout: {method}")
            raise WalletTimeout(f"Wallet RPC timeout: {method}")
        except httpx.HTTPStatusError as e:
            log.error(f"Wallet RPC HTTP error: {method} -> {e.response.status_code}")
            raise WalletError(f"Wallet RPC failed: {method} -> HTTP {e.response.status_code}")
        except httpx.HTTPError as e:
            log.error(f"Wallet RPC transport error: {method} -> {e}")
            raise WalletError(f"Wallet RPC failed: {method} -> {e}")
        except ValueError as e:
            raise WalletError(f"Invalid JSON response for {method}: {e}")

        if data.get("error"):
            message = data["error"].get("message", str(data["error"]))
            log.error(f"Wallet RPC error: {method} -> {message}")
            raise WalletError(f"Wallet RPC error: {method} -> {message}")

        return data.get("result") or {}

    def _call(self, method: str, params: Optional[Dict[str, Any]] = None,
              timeout: Optional[float] = None) -> Dict[str, Any]:
        """Call monero-wallet-rpc."""
        return self._post(self.config.rpc_url, method, params, timeout)

    def _daemon_call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Call the daemon's JSON-RPC endpoint."""
        url = self.config.daemon_uri.rstrip("/") + "/json_rpc"
        return self._post(url, method, params, None)

    # =========================================================================
    # Wallet lifecycle
    # =========================================================================

    def _acquire_slot(self, filename: str):
        if not self._slot.acquire(timeout=self.config.open_timeout):
            raise WalletTimeout(f"Wallet RPC busy, could not open {filename}")

    def create_wallet(self, filename: str) -> WalletHandle:
        """Create a new wallet file. It is left open."""
        self._acquire_slot(filename)
        try:
            self._call("create_wallet", {
                "filename": filename,
                "password": self.config.wallet_password,
                "language": "English",
            })
        except WalletError:
            self._slot.release()
            raise
        log.info(f"Created wallet {filename}")
        return WalletHandle(filename=filename)

    def open_and_sync(self, filename: str, sync: bool = True) -> WalletHandle:
        """Open a wallet and optionally scan the chain for new outputs."""
        self._acquire_slot(filename)
        try:
            self._call("open_wallet", {
                "filename": filename,
                "password": self.config.wallet_password,
            })
        except WalletError:
            self._slot.release()
            raise

        handle = WalletHandle(filename=filename)
        if sync:
            try:
                self._call("refresh", {}, timeout=self.config.sync_timeout)
            except WalletError:
                self.close(handle)
                raise
        return handle

    def close(self, handle: WalletHandle):
        """Close the wallet and free the wallet-rpc slot."""
        if not handle.open:
            return
        try:
            self._call("close_wallet", {"autosave_current": True})
        except WalletError as e:
            log.warning(f"Failed to close wallet {handle.filename}: {e}")
        finally:
            handle.open = False
            self._slot.release()

    @contextmanager
    def opened(self, filename: str, sync: bool = True):
        """Open (and sync) a wallet for the duration of the block."""
        handle = self.open_and_sync(filename, sync=sync)
        try:
            yield handle
        finally:
            self.close(handle)

    @contextmanager
    def created(self, filename: str):
        """Create a wallet and keep it open for the duration of the block."""
        handle = self.create_wallet(filename)
        try:
            yield handle
        finally:
            self.close(handle)

    def get_seed(self, handle: WalletHandle) -> str:
        return self._call("query_key", {"key_type": "mnemonic"})["key"]

    def rebuild_from_seed_at_height(self, handle: WalletHandle, height: int) -> WalletHandle:
        """
        Recreate the open wallet from its seed with a new restore height.

        The wallet files are moved aside and only deleted once the restore
        succeeds. On failure the originals are put back and reopened, so the
        handle stays usable. Either way the returned handle is open and
        still owns the wallet-rpc slot.
        """
        seed = self.get_seed(handle)
        self._call("close_wallet", {"autosave_current": True})

        base = os.path.join(os.path.expanduser(self.config.wallet_dir), handle.filename)
        moved = []
        for path in (base, base + ".keys"):
            if os.path.exists(path):
                os.replace(path, path + ".bak")
                moved.append(path)

        try:
            self._call("restore_deterministic_wallet", {
                "filename": handle.filename,
                "password": self.config.wallet_password,
                "seed": seed,
                "restore_height": height,
                "language": "English",
                "autosave_current": True,
            })
        except WalletError as e:
            log.error(f"Rebuild of {handle.filename} failed, restoring original files: {e}")
            self._restore_backups(handle, moved)
            raise

        for path in moved:
            os.remove(path + ".bak")
        log.info(f"Rebuilt wallet {handle.filename} at restore height {height}")
        return handle

    def _restore_backups(self, handle: WalletHandle, moved: List[str]):
        for path in moved:
            os.replace(path + ".bak", path)
        try:
            self._call("open_wallet", {
                "filename": handle.filename,
                "password": self.config.wallet_password,
            })
        except WalletError as e:
            log.error(f"Could not reopen {handle.filename} after failed rebuild: {e}")

    # =========================================================================
    # Multisig setup
    # =========================================================================

    def prepare_multisig(self, handle: WalletHandle) -> str:
        return self._call("prepare_multisig", {})["multisig_info"]

    def make_multisig(self, handle: WalletHandle, peers: List[str], threshold: int) -> str:
        result = self._call("make_multisig", {
            "multisig_info": list(peers),
            "threshold": threshold,
            "password": self.config.wallet_password,
        })
        return result.get("multisig_info", "")

    def exchange_multisig_keys(self, handle: WalletHandle, peers: List[str]) -> str:
        """Run one key exchange round. Returns "" once the wallet is complete."""
        result = self._call("exchange_multisig_keys", {
            "multisig_info": list(peers),
            "password": self.config.wallet_password,
        })
        return result.get("multisig_info", "")

    def primary_address(self, handle: WalletHandle) -> str:
        return self._call("get_address", {"account_index": 0})["address"]

    # =========================================================================
    # Balances and heights
    # =========================================================================

    def balance(self, handle: WalletHandle) -> Tuple[int, int]:
        """Return (total, unlocked) balance in atomic units."""
        result = self._call("get_balance", {"account_index": 0})
        return int(result.get("balance", 0)), int(result.get("unlocked_balance", 0))

    def current_height(self, handle: WalletHandle) -> int:
        """Height the open wallet has scanned to."""
        return int(self._call("get_height", {})["height"])

    def daemon_height(self) -> int:
        return int(self._daemon_call("get_info")["height"])

    # =========================================================================
    # Multisig spending
    # =========================================================================

    def create_transaction(self, handle: WalletHandle, destination: str, amount_atomic: int) -> str:
        """Build an unsigned multisig transaction paying `amount_atomic` to `destination`."""
        result = self._call("transfer", {
            "destinations": [{"amount": amount_atomic, "address": destination}],
            "account_index": 0,
            "priority": 0,
            "get_tx_metadata": False,
        })
        txset = result.get("multisig_txset")
        if not txset:
            raise WalletError("transfer returned no multisig_txset (wallet not multisig?)")
        return txset

    def sign_partial(self, handle: WalletHandle, tx_blob: str) -> str:
        """Add this wallet's signature to a multisig transaction set."""
        return self._call("sign_multisig", {"tx_data_hex": tx_blob})["tx_data_hex"]

    def submit(self, handle: WalletHandle, tx_blob: str) -> List[str]:
        """Broadcast a fully signed multisig transaction set."""
        return list(self._call("submit_multisig", {"tx_data_hex": tx_blob}).get("tx_hash_list", []))
