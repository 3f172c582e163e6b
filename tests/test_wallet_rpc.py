#!/usr/bin/env python3
"""
Monero Wallet RPC Client Tests

Runs MoneroWalletClient against an in-process httpx transport that plays
monero-wallet-rpc and the daemon.
"""

import sys
import os
import json
import tempfile
import threading
import unittest

import httpx

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from escrow.wallet.monero import MoneroConfig, MoneroWalletClient, WalletError, WalletTimeout

RPC_URL = "http://wallet.test/json_rpc"
DAEMON_URI = "http://daemon.test:38081"


class FakeRpc:
    """Scripted wallet-rpc: method -> result dict, error dict, or exception."""

    def __init__(self):
        self.requests = []
        self.results = {}
        self.errors = {}
        self.raises = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method = body["method"]
        self.requests.append((str(request.url), method, body.get("params")))
        if method in self.raises:
            raise self.raises[method](f"{method} timed out", request=request)
        if method in self.errors:
            return httpx.Response(200, json={"id": "0", "jsonrpc": "2.0", "error": self.errors[method]})
        return httpx.Response(200, json={"id": "0", "jsonrpc": "2.0", "result": self.results.get(method, {})})

    def methods(self):
        return [r[1] for r in self.requests]

    def params_of(self, method):
        return [r[2] for r in self.requests if r[1] == method]


class WalletRpcTestCase(unittest.TestCase):

    def setUp(self):
        self.rpc = FakeRpc()
        self.tmp = tempfile.TemporaryDirectory()
        self.config = MoneroConfig(
            rpc_url=RPC_URL,
            daemon_uri=DAEMON_URI,
            wallet_dir=self.tmp.name,
            wallet_password="pw",
            open_timeout=0.5,
        )
        self.client = MoneroWalletClient(self.config, transport=httpx.MockTransport(self.rpc))

    def tearDown(self):
        self.client.close_client()
        self.tmp.cleanup()

    def assert_slot_free(self):
        acquired = []

        def grab():
            ok = self.client._slot.acquire(timeout=0.5)
            acquired.append(ok)
            if ok:
                self.client._slot.release()

        t = threading.Thread(target=grab)
        t.start()
        t.join()
        self.assertEqual(acquired, [True])


class TestTransport(WalletRpcTestCase):

    def test_balance_parsing(self):
        self.rpc.results["get_balance"] = {"balance": 2500000000000, "unlocked_balance": 1000000000000}
        with self.client.opened("w1", sync=False) as handle:
            total, unlocked = self.client.balance(handle)
        self.assertEqual((total, unlocked), (2500000000000, 1000000000000))
        self.assertEqual(self.rpc.params_of("get_balance"), [{"account_index": 0}])

    def test_rpc_error_raises(self):
        self.rpc.errors["prepare_multisig"] = {"code": -1, "message": "This wallet is already multisig"}
        with self.client.opened("w1", sync=False) as handle:
            with self.assertRaises(WalletError) as ctx:
                self.client.prepare_multisig(handle)
        self.assertIn("already multisig", str(ctx.exception))

    def test_http_error_raises(self):
        client = MoneroWalletClient(
            self.config, transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        with self.assertRaises(WalletError):
            client.daemon_height()
        client.close_client()

    def test_wallet_height_uses_wallet_rpc(self):
        self.rpc.results["get_height"] = {"height": 1000}
        with self.client.opened("w1", sync=False) as handle:
            self.assertEqual(self.client.current_height(handle), 1000)
        self.assertEqual(self.rpc.requests[1][0], RPC_URL)

    def test_daemon_height_uses_daemon(self):
        self.rpc.results["get_info"] = {"height": 1234567}
        self.assertEqual(self.client.daemon_height(), 1234567)
        url, method, _ = self.rpc.requests[-1]
        self.assertEqual(url, DAEMON_URI + "/json_rpc")
        self.assertEqual(method, "get_info")


class TestLifecycle(WalletRpcTestCase):

    def test_open_syncs_and_closes(self):
        with self.client.opened("w1"):
            pass
        self.assertEqual(self.rpc.methods(), ["open_wallet", "refresh", "close_wallet"])
        self.assertEqual(self.rpc.params_of("open_wallet"), [{"filename": "w1", "password": "pw"}])
        self.assert_slot_free()

    def test_sync_timeout_closes_wallet(self):
        self.rpc.raises["refresh"] = httpx.ReadTimeout
        with self.assertRaises(WalletTimeout):
            self.client.open_and_sync("w1")
        self.assertEqual(self.rpc.methods(), ["open_wallet", "refresh", "close_wallet"])
        self.assert_slot_free()

    def test_failed_open_frees_slot(self):
        self.rpc.errors["open_wallet"] = {"code": -1, "message": "Failed to open wallet"}
        with self.assertRaises(WalletError):
            self.client.open_and_sync("w1")
        self.assert_slot_free()

    def test_error_inside_block_still_closes(self):
        with self.assertRaises(ValueError):
            with self.client.created("w1"):
                raise ValueError("boom")
        self.assertEqual(self.rpc.methods(), ["create_wallet", "close_wallet"])
        self.assert_slot_free()

    def test_slot_is_exclusive(self):
        handle = self.client.open_and_sync("w1", sync=False)
        errors = []

        def other():
            try:
                self.client.open_and_sync("w2", sync=False)
            except WalletTimeout as e:
                errors.append(e)

        t = threading.Thread(target=other)
        t.start()
        t.join()
        self.client.close(handle)
        self.assertEqual(len(errors), 1)

    def test_rebuild_replaces_files(self):
        self.rpc.results["query_key"] = {"key": "seed words here"}
        for name in ("w1", "w1.keys"):
            with open(os.path.join(self.tmp.name, name), "w") as f:
                f.write("old")

        with self.client.created("w1") as handle:
            self.client.rebuild_from_seed_at_height(handle, 990)

        self.assertFalse(os.path.exists(os.path.join(self.tmp.name, "w1")))
        self.assertFalse(os.path.exists(os.path.join(self.tmp.name, "w1.keys")))
        self.assertEqual(
            self.rpc.methods(),
            ["create_wallet", "query_key", "close_wallet", "restore_deterministic_wallet", "close_wallet"],
        )
        restore = self.rpc.params_of("restore_deterministic_wallet")[0]
        self.assertEqual(restore["seed"], "seed words here")
        self.assertEqual(restore["restore_height"], 990)
        self.assertEqual(restore["filename"], "w1")
        self.assertEqual(os.listdir(self.tmp.name), [])

    def test_failed_rebuild_keeps_wallet_files(self):
        self.rpc.results["query_key"] = {"key": "seed words here"}
        self.rpc.errors["restore_deterministic_wallet"] = {"code": -1, "message": "daemon busy"}
        for name in ("w1", "w1.keys"):
            with open(os.path.join(self.tmp.name, name), "w") as f:
                f.write(f"original {name}")

        with self.client.opened("w1", sync=False) as handle:
            with self.assertRaises(WalletError):
                self.client.rebuild_from_seed_at_height(handle, 990)
            self.assertTrue(handle.open)

        self.assertEqual(sorted(os.listdir(self.tmp.name)), ["w1", "w1.keys"])
        with open(os.path.join(self.tmp.name, "w1.keys")) as f:
            self.assertEqual(f.read(), "original w1.keys")
        # Original wallet reopened, then closed by the block
        self.assertEqual(
            self.rpc.methods(),
            ["open_wallet", "query_key", "close_wallet", "restore_deterministic_wallet",
             "open_wallet", "close_wallet"],
        )
        self.assert_slot_free()


class TestMultisigCalls(WalletRpcTestCase):

    def test_make_multisig_params(self):
        self.rpc.results["make_multisig"] = {"address": "", "multisig_info": "MultisigxV2R1..."}
        with self.client.opened("w1", sync=False) as handle:
            blob = self.client.make_multisig(handle, ["a", "b"], 2)
        self.assertEqual(blob, "MultisigxV2R1...")
        self.assertEqual(
            self.rpc.params_of("make_multisig"),
            [{"multisig_info": ["a", "b"], "threshold": 2, "password": "pw"}],
        )

    def test_final_exchange_returns_empty(self):
        self.rpc.results["exchange_multisig_keys"] = {"address": "5abc", "multisig_info": ""}
        with self.client.opened("w1", sync=False) as handle:
            self.assertEqual(self.client.exchange_multisig_keys(handle, ["x", "y"]), "")

    def test_transfer_requires_txset(self):
        self.rpc.results["transfer"] = {"tx_hash": "abc"}
        with self.client.opened("w1", sync=False) as handle:
            with self.assertRaises(WalletError):
                self.client.create_transaction(handle, "5dest", 995)

    def test_spend_flow(self):
        self.rpc.results["transfer"] = {"multisig_txset": "unsigned"}
        self.rpc.results["sign_multisig"] = {"tx_data_hex": "signed", "tx_hash_list": []}
        self.rpc.results["submit_multisig"] = {"tx_hash_list": ["h1"]}
        with self.client.opened("w1", sync=False) as handle:
            unsigned = self.client.create_transaction(handle, "5dest", 995)
            signed = self.client.sign_partial(handle, unsigned)
            tx_ids = self.client.submit(handle, signed)
        self.assertEqual(tx_ids, ["h1"])
        transfer = self.rpc.params_of("transfer")[0]
        self.assertEqual(transfer["destinations"], [{"amount": 995, "address": "5dest"}])
        self.assertEqual(self.rpc.params_of("submit_multisig"), [{"tx_data_hex": "signed"}])


if __name__ == "__main__":
    unittest.main(verbosity=2)
