from __future__ import annotations

from types import SimpleNamespace
from typing import Dict, Optional, Tuple

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from tx_builder import (
    CONFIG_DISCRIMINATOR,
    MARKET_DISCRIMINATOR,
    WSOL_MINT,
    MarketHeaderLayout,
    TokenMillConfigLayout,
)


def market_account_data(config: Pubkey, creator: Pubkey, base_mint: Pubkey, quote_mint: Pubkey = WSOL_MINT) -> bytes:
    header = MarketHeaderLayout.build(
        {
            "config": list(bytes(config)),
            "creator": list(bytes(creator)),
            "base_token_mint": list(bytes(base_mint)),
            "quote_token_mint": list(bytes(quote_mint)),
        }
    )
    # trailing market state the builder never reads
    return MARKET_DISCRIMINATOR + header + bytes(64)


def config_account_data(authority: Pubkey, fee_recipient: Pubkey) -> bytes:
    body = TokenMillConfigLayout.build(
        {
            "authority": list(bytes(authority)),
            "pending_authority": None,
            "protocol_fee_recipient": list(bytes(fee_recipient)),
            "protocol_fee_share": 2000,
            "referral_fee_share": 500,
        }
    )
    return CONFIG_DISCRIMINATOR + body


class FakeRpcClient:
    """In-memory stand-in for solana.rpc.async_api.AsyncClient."""

    def __init__(
        self,
        accounts: Optional[Dict[Pubkey, bytes]] = None,
        balances: Optional[Dict[Pubkey, Tuple[int, int]]] = None,
        blockhash: Optional[Hash] = None,
        fail_accounts: bool = False,
        fail_blockhash: bool = False,
        simulation=None,
    ):
        self.accounts = dict(accounts or {})
        self.balances = dict(balances or {})
        self.blockhash = blockhash or Hash.new_unique()
        self.fail_accounts = fail_accounts
        self.fail_blockhash = fail_blockhash
        self.simulation = simulation or SimpleNamespace(err=None, logs=[], return_data=None)
        self.multiple_calls = []
        self.simulated = []
        self.sent = []
        self.closed = False

    def add_account(self, address: Pubkey, data: bytes = b"\x00") -> None:
        self.accounts[address] = data

    def set_balance(self, address: Pubkey, amount: int, decimals: int = 9) -> None:
        self.accounts.setdefault(address, bytes(165))
        self.balances[address] = (amount, decimals)

    async def get_multiple_accounts(self, pubkeys):
        self.multiple_calls.append(list(pubkeys))
        if self.fail_accounts:
            raise ConnectionError("rpc unreachable")
        value = [SimpleNamespace(data=self.accounts[pk]) if pk in self.accounts else None for pk in pubkeys]
        return SimpleNamespace(value=value)

    async def get_token_account_balance(self, pubkey):
        if self.fail_accounts:
            raise ConnectionError("rpc unreachable")
        amount, decimals = self.balances.get(pubkey, (0, 9))
        return SimpleNamespace(value=SimpleNamespace(amount=str(amount), decimals=decimals))

    async def get_latest_blockhash(self):
        if self.fail_blockhash:
            raise ConnectionError("blockhash unavailable")
        return SimpleNamespace(value=SimpleNamespace(blockhash=self.blockhash))

    async def simulate_transaction(self, tx, sig_verify=False):
        self.simulated.append(tx)
        return SimpleNamespace(value=self.simulation)

    async def send_raw_transaction(self, data, opts=None):
        self.sent.append(data)
        return SimpleNamespace(value="5ignature")

    async def close(self):
        self.closed = True


class FakeDasResponse:
    def __init__(self, payload: dict):
        self.payload = payload

    def raise_for_status(self):
        return None

    def json(self):
        return self.payload


@pytest.fixture
def user() -> Keypair:
    return Keypair()


@pytest.fixture
def server_swap_authority() -> Keypair:
    return Keypair()


@pytest.fixture
def config_address() -> Pubkey:
    return Pubkey.new_unique()


@pytest.fixture
def base_mint() -> Pubkey:
    return Pubkey.new_unique()


@pytest.fixture
def rpc() -> FakeRpcClient:
    return FakeRpcClient()
