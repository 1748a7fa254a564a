import struct
from decimal import Decimal

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from account_probe import AccountState, AccountStatus
from composer import (
    BASE_MINT_KEY,
    DEFAULT_ASK_PRICES,
    VESTING_PLAN_KEY,
    compose_create_market,
    compose_release,
    compose_set_curve,
    compose_stake,
    compose_swap,
    compose_vesting,
    derive_bid_prices,
    derive_staking_accounts,
)
from ephemeral import EphemeralKeys
from errors import DomainRuleViolation, OnChainPreconditionError
from operations import CreateMarket, SetCurve, Vest
from resolver import SwapState, derive_swap_accounts
from tx_builder import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    WSOL_MINT,
    MarketAccount,
    market_pda,
    sighash,
    staking_pda,
)

# Instruction label -> index (into ix.accounts) of the account it creates.
CREATED_ACCOUNT_INDEX = {
    "create_user_base_ata": 1,
    "create_user_quote_ata": 1,
    "create_market_quote_ata": 1,
    "create_protocol_quote_ata": 1,
    "create_staking": 1,
    "create_stake_position": 1,
    "lock_market": 1,
}


def assert_created_before_use(plan):
    for idx, label in enumerate(plan.labels):
        if label not in CREATED_ACCOUNT_INDEX:
            continue
        created = plan.instructions[idx].accounts[CREATED_ACCOUNT_INDEX[label]].pubkey
        for earlier in plan.instructions[:idx]:
            assert created not in [meta.pubkey for meta in earlier.accounts], f"{label} created after use"


def absent(addr):
    return AccountState(addr, AccountStatus.ABSENT)


def present(addr):
    return AccountState(addr, AccountStatus.PRESENT_EMPTY)


@pytest.fixture
def vest_params(user, base_mint):
    market = market_pda(base_mint)
    return Vest(
        userPublicKey=str(user.pubkey()),
        marketAddress=str(market),
        baseTokenMint=str(base_mint),
        amount=1_000_000,
        startTime=1_700_000_000,
        duration=86_400,
    )


@pytest.fixture
def staking_accounts(user, base_mint):
    return derive_staking_accounts(market_pda(base_mint), user.pubkey(), base_mint)


class TestVesting:
    def test_bootstrap_is_idempotent(self, vest_params, staking_accounts):
        states = {addr: present(addr) for addr in staking_accounts.probe_targets()}
        for _ in range(2):
            plan = compose_vesting(vest_params, staking_accounts, states, EphemeralKeys())
            assert plan.labels == ["create_vesting_plan"]
            assert plan.instructions[0].data[:8] == sighash("create_vesting_plan")

    def test_fresh_wallet_gets_full_bootstrap(self, vest_params, staking_accounts):
        states = {addr: absent(addr) for addr in staking_accounts.probe_targets()}
        plan = compose_vesting(vest_params, staking_accounts, states, EphemeralKeys())
        assert plan.labels == [
            "create_user_base_ata",
            "create_staking",
            "create_stake_position",
            "create_vesting_plan",
        ]
        assert plan.instructions[0].program_id == ASSOCIATED_TOKEN_PROGRAM_ID
        assert_created_before_use(plan)

    def test_vesting_plan_key_cosigns(self, vest_params, staking_accounts):
        states = {addr: present(addr) for addr in staking_accounts.probe_targets()}
        ephemeral = EphemeralKeys()
        plan = compose_vesting(vest_params, staking_accounts, states, ephemeral)
        vesting_plan = ephemeral.pubkey(VESTING_PLAN_KEY)
        assert [kp.pubkey() for kp in plan.signers] == [vesting_plan]
        meta = plan.instructions[-1].accounts[3]
        assert meta.pubkey == vesting_plan and meta.is_signer

    def test_cliff_defaults_to_zero(self, vest_params, staking_accounts):
        states = {addr: present(addr) for addr in staking_accounts.probe_targets()}
        plan = compose_vesting(vest_params, staking_accounts, states, EphemeralKeys())
        assert struct.unpack("<qQqq", plan.instructions[-1].data[8:])[3] == 0


def test_release_has_no_local_signers(staking_accounts):
    plan = compose_release(staking_accounts, Pubkey.new_unique())
    assert plan.labels == ["release"]
    assert plan.signers == []


def test_stake_rejects_existing_staking(user, base_mint):
    market = market_pda(base_mint)
    staking = staking_pda(market)
    with pytest.raises(DomainRuleViolation):
        compose_stake(market, user.pubkey(), present(staking))
    plan = compose_stake(market, user.pubkey(), absent(staking))
    assert plan.labels == ["create_staking"]
    assert plan.instructions[0].accounts[2].pubkey == user.pubkey()


class TestSetCurve:
    def test_default_bids_are_floor_99_percent(self):
        assert derive_bid_prices(DEFAULT_ASK_PRICES) == [
            27, 28, 31, 46, 108, 376, 1485, 6336, 26730, 118800, 495000,
        ]

    def test_default_curve_used_when_no_prices(self, user, base_mint):
        params = SetCurve(userPublicKey=str(user.pubkey()), market=str(market_pda(base_mint)))
        plan = compose_set_curve(params)
        values = struct.unpack("<22Q", plan.instructions[0].data[8:])
        assert list(values[11:]) == DEFAULT_ASK_PRICES
        assert list(values[:11]) == derive_bid_prices(DEFAULT_ASK_PRICES)

    def test_caller_prices_pass_through(self, user, base_mint):
        asks = [100 * (i + 1) for i in range(11)]
        bids = [90 * (i + 1) for i in range(11)]
        params = SetCurve(
            userPublicKey=str(user.pubkey()), market=str(market_pda(base_mint)), askPrices=asks, bidPrices=bids
        )
        values = struct.unpack("<22Q", compose_set_curve(params).instructions[0].data[8:])
        assert list(values) == bids + asks


def test_create_market_uses_ephemeral_mint(user, config_address):
    params = CreateMarket(
        userPublicKey=str(user.pubkey()),
        name="Mill",
        symbol="MILL",
        uri="https://example.com/mill.json",
        totalSupply=1_000_000_000,
        creatorFeeShare=2000,
        stakingFeeShare=6000,
    )
    ephemeral = EphemeralKeys()
    plan, accounts = compose_create_market(params, config_address, WSOL_MINT, ephemeral)
    mint = ephemeral.pubkey(BASE_MINT_KEY)
    assert accounts.base_token_mint == mint
    assert accounts.market == market_pda(mint)
    assert [kp.pubkey() for kp in plan.signers] == [mint]
    assert plan.fee_payer == user.pubkey()
    assert struct.unpack("<QHH", plan.instructions[0].data[-12:]) == (1_000_000_000 * 10**6, 2000, 6000)


class TestLockMarketCreator:
    @pytest.fixture
    def fresh_state(self):
        return SwapState(
            needs_lock=True,
            needs_market_quote_ata=True,
            needs_user_quote_ata=True,
            needs_user_base_ata=True,
            should_free=False,
            market_quote_balance=Decimal(0),
        )

    def _accounts(self, creator, user, server_swap_authority, config_address, base_mint):
        market = MarketAccount(market_pda(base_mint), config_address, creator, base_mint, WSOL_MINT)
        return derive_swap_accounts(market, user.pubkey(), server_swap_authority.pubkey(), Pubkey.new_unique())

    def test_foreign_creator_is_rejected(self, fresh_state, user, server_swap_authority, config_address, base_mint):
        accounts = self._accounts(Pubkey.new_unique(), user, server_swap_authority, config_address, base_mint)
        with pytest.raises(OnChainPreconditionError):
            compose_swap(accounts, fresh_state, "buy", "exactInput", 10, 9, server_swap_authority)

    def test_server_creator_cosigns_lock(self, fresh_state, user, server_swap_authority, config_address, base_mint):
        authority = Keypair()
        accounts = self._accounts(authority.pubkey(), user, server_swap_authority, config_address, base_mint)
        plan = compose_swap(
            accounts, fresh_state, "buy", "exactInput", 10, 9, server_swap_authority, lock_signer=authority
        )
        assert {kp.pubkey() for kp in plan.signers} == {authority.pubkey(), server_swap_authority.pubkey()}
        assert_created_before_use(plan)
