from __future__ import annotations

import asyncio
import unittest

from main import resolve_wallet_balance

WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


class _StubRpc:
    def __init__(self, balance: float = 0.42) -> None:
        self.balance = balance
        self.owners: list[str] = []

    async def get_balance_sol(self, owner: str) -> float:
        self.owners.append(owner)
        return self.balance


class _BackendWithBalance:
    async def wallet_balance(self) -> float:
        return 1.5


class _BareBackend:
    async def acquire(self, asset_id: str, capital_amount: float):
        raise AssertionError("not used")


class WalletBalanceWiringTests(unittest.TestCase):
    def test_backend_balance_takes_precedence(self) -> None:
        rpc = _StubRpc()
        read = resolve_wallet_balance(_BackendWithBalance(), rpc, WALLET)
        self.assertIsNotNone(read)
        self.assertEqual(asyncio.run(read()), 1.5)
        self.assertEqual(rpc.owners, [])

    def test_falls_back_to_rpc_balance_for_configured_wallet(self) -> None:
        rpc = _StubRpc(balance=0.05)
        read = resolve_wallet_balance(_BareBackend(), rpc, WALLET)
        self.assertIsNotNone(read)
        self.assertEqual(asyncio.run(read()), 0.05)
        self.assertEqual(rpc.owners, [WALLET])

    def test_no_balance_gate_without_wallet_or_backend_support(self) -> None:
        rpc = _StubRpc()
        self.assertIsNone(resolve_wallet_balance(_BareBackend(), rpc, ""))
        self.assertEqual(rpc.owners, [])


if __name__ == "__main__":
    unittest.main()
