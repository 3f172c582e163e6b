"""
Wallet capability clients for escrow coordinator.
"""

from .monero import (
    MoneroWalletClient,
    MoneroConfig,
    WalletHandle,
    WalletError,
    WalletTimeout,
)

__all__ = [
    "MoneroWalletClient",
    "MoneroConfig",
    "WalletHandle",
    "WalletError",
    "WalletTimeout",
]
