#!/usr/bin/env python3
"""
Escrow Coordinator Server
2-of-3 Monero multisig escrow for peer-to-peer trades.

Key holders: buyer, seller, service
Platform fee: 0.5% of the escrowed amount, taken at release

Endpoints:
  GET  /api/status                          - Health check

  # Multisig setup
  POST /api/multisig/sessions               - Create session
  GET  /api/multisig/{id}                   - Session status + peer blobs
  POST /api/multisig/{id}/prepare|make|exchange

  # Trades
  POST /api/trades                          - Open trade on an offer
  POST /api/trades/{id}/check-deposit       - Check escrow deposit now
  POST /api/trades/{id}/mark-payment-sent   - Buyer sent fiat
  POST /api/trades/{id}/initiate-release    - Seller: unsigned payout
  POST /api/trades/{id}/finalize-release    - Co-sign + broadcast
  POST /api/trades/{id}/dispute             - Open dispute

  # Admin
  /api/admin/...                            - Overrides, arbitration, stats
"""

import os
import time
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from escrow import __version__
from escrow.core import TERMINAL_TRADE_STATES
from escrow.errors import EscrowError
from escrow.services import get_services
from escrow.wallet.monero import MoneroWalletClient

from routes import admin as admin_routes
from routes import multisig as multisig_routes
from routes import offers as offer_routes
from routes import trades as trade_routes

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

# =============================================================================
# APP SETUP
# =============================================================================

app = FastAPI(
    title="Escrow Coordinator",
    description="2-of-3 multisig escrow for P2P trades",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(multisig_routes.router)
app.include_router(trade_routes.router)
app.include_router(offer_routes.router)
app.include_router(admin_routes.router)


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError):
    if exc.status_code >= 500:
        log.error(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/")
async def root():
    return {
        "name": "Escrow Coordinator",
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/api/status")
def get_status():
    """Health check."""
    svc = get_services()
    active = [
        t for t in svc.store.list_trades()
        if t.status not in TERMINAL_TRADE_STATES
    ]
    return {
        "status": "ok",
        "version": __version__,
        "timestamp": int(time.time()),
        "network": svc.config.network,
        "fee_rate": svc.config.fee_rate,
        "confirmations": svc.config.confirmations,
        "active_trades": len(active),
        "poller_running": svc.poller.running,
        "last_sweep": svc.poller.last_sweep,
    }

# =============================================================================
# FASTAPI STARTUP/SHUTDOWN EVENTS
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    svc = get_services()

    users = svc.store.recalculate_all_reputations()
    log.info(f"Reputation recalculated for {users} users")

    if svc.config.poll_interval > 0:
        svc.poller.start()
    else:
        log.warning("Deposit poller disabled (poll interval 0)")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    svc = get_services()
    svc.poller.stop()
    svc.store.save()
    if isinstance(svc.wallet, MoneroWalletClient):
        svc.wallet.close_client()
    log.info("Escrow coordinator stopped")

# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting escrow coordinator on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
