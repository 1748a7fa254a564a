from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from account_probe import AccountState
from assembler import TransactionPlan
from ephemeral import EphemeralKeys
from errors import DomainRuleViolation, OnChainPreconditionError
from operations import CreateMarket, SetCurve, Vest
from resolver import SwapAccounts, SwapState, swap_authority_for
from tx_builder import (
    BASE_TOKEN_DECIMALS,
    TOKEN_MILL_PROGRAM_ID,
    build_create_ata_ix,
    build_create_market_ix,
    build_create_stake_position_ix,
    build_create_staking_ix,
    build_create_vesting_plan_ix,
    build_free_market_ix,
    build_lock_market_ix,
    build_permissioned_swap_ix,
    build_release_ix,
    build_set_market_prices_ix,
    derive_ata,
    market_pda,
    metadata_pda,
    quote_token_badge_pda,
    stake_position_pda,
    staking_pda,
    swap_authority_badge_pda,
)

logger = logging.getLogger("tokenmill.composer")

DEFAULT_ASK_PRICES: List[int] = [28, 29, 32, 47, 110, 380, 1500, 6400, 27000, 120000, 500000]
BID_RATIO_NUM = 99
BID_RATIO_DEN = 100

BASE_MINT_KEY = "base_token_mint"
VESTING_PLAN_KEY = "vesting_plan"


@dataclass(frozen=True)
class CreateMarketAccounts:
    market: Pubkey
    base_token_mint: Pubkey
    base_token_metadata: Pubkey
    market_base_ata: Pubkey
    quote_token_badge: Pubkey


def compose_create_market(
    params: CreateMarket,
    config: Pubkey,
    quote_token_mint: Pubkey,
    ephemeral: EphemeralKeys,
    program_id: Pubkey = TOKEN_MILL_PROGRAM_ID,
):
    creator = Pubkey.from_string(params.user_public_key)
    base_mint = ephemeral.generate(BASE_MINT_KEY)
    market = market_pda(base_mint, program_id)
    accounts = CreateMarketAccounts(
        market=market,
        base_token_mint=base_mint,
        base_token_metadata=metadata_pda(base_mint),
        market_base_ata=derive_ata(market, base_mint),
        quote_token_badge=quote_token_badge_pda(config, quote_token_mint, program_id),
    )
    ix = build_create_market_ix(
        config=config,
        market=accounts.market,
        base_token_mint=accounts.base_token_mint,
        base_token_metadata=accounts.base_token_metadata,
        market_base_token_ata=accounts.market_base_ata,
        quote_token_mint=quote_token_mint,
        quote_token_badge=accounts.quote_token_badge,
        creator=creator,
        name=params.name,
        symbol=params.symbol,
        uri=params.uri,
        total_supply=params.total_supply * 10**BASE_TOKEN_DECIMALS,
        creator_fee_share=params.creator_fee_share,
        staking_fee_share=params.staking_fee_share,
        program_id=program_id,
    )
    plan = TransactionPlan(fee_payer=creator)
    plan.add(ix, "create_market_with_spl", signers=[ephemeral.signer(BASE_MINT_KEY)])
    return plan, accounts


def compose_stake(
    market: Pubkey, user: Pubkey, staking_state: AccountState, program_id: Pubkey = TOKEN_MILL_PROGRAM_ID
) -> TransactionPlan:
    if staking_state.exists:
        raise DomainRuleViolation(f"Staking already initialized for market {market}")
    staking = staking_pda(market, program_id)
    plan = TransactionPlan(fee_payer=user)
    plan.add(build_create_staking_ix(market, staking, user, program_id), "create_staking")
    return plan


@dataclass(frozen=True)
class StakingAccounts:
    market: Pubkey
    user: Pubkey
    base_token_mint: Pubkey
    staking: Pubkey
    stake_position: Pubkey
    market_base_ata: Pubkey
    user_base_ata: Pubkey

    def probe_targets(self) -> List[Pubkey]:
        return [self.user_base_ata, self.staking, self.stake_position]


def derive_staking_accounts(
    market: Pubkey, user: Pubkey, base_token_mint: Pubkey, program_id: Pubkey = TOKEN_MILL_PROGRAM_ID
) -> StakingAccounts:
    return StakingAccounts(
        market=market,
        user=user,
        base_token_mint=base_token_mint,
        staking=staking_pda(market, program_id),
        stake_position=stake_position_pda(market, user, program_id),
        market_base_ata=derive_ata(market, base_token_mint),
        user_base_ata=derive_ata(user, base_token_mint),
    )


def compose_vesting(
    params: Vest,
    accounts: StakingAccounts,
    states: Dict[Pubkey, AccountState],
    ephemeral: EphemeralKeys,
    program_id: Pubkey = TOKEN_MILL_PROGRAM_ID,
) -> TransactionPlan:
    """Vesting plan creation, prefixed by whatever the user's staking setup still lacks."""
    plan = TransactionPlan(fee_payer=accounts.user)
    if not states[accounts.user_base_ata].exists:
        plan.add(
            build_create_ata_ix(accounts.user, accounts.user, accounts.base_token_mint, accounts.user_base_ata),
            "create_user_base_ata",
        )
    if not states[accounts.staking].exists:
        plan.add(
            build_create_staking_ix(accounts.market, accounts.staking, accounts.user, program_id), "create_staking"
        )
    if not states[accounts.stake_position].exists:
        plan.add(
            build_create_stake_position_ix(accounts.market, accounts.stake_position, accounts.user, program_id),
            "create_stake_position",
        )
    vesting_plan = ephemeral.generate(VESTING_PLAN_KEY)
    ix = build_create_vesting_plan_ix(
        market=accounts.market,
        staking=accounts.staking,
        stake_position=accounts.stake_position,
        vesting_plan=vesting_plan,
        base_token_mint=accounts.base_token_mint,
        market_base_token_ata=accounts.market_base_ata,
        user_base_token_ata=accounts.user_base_ata,
        user=accounts.user,
        start=params.start_time,
        amount=params.amount,
        vesting_duration=params.duration,
        cliff_duration=params.cliff_duration,
        program_id=program_id,
    )
    plan.add(ix, "create_vesting_plan", signers=[ephemeral.signer(VESTING_PLAN_KEY)])
    return plan


def compose_release(
    accounts: StakingAccounts, vesting_plan: Pubkey, program_id: Pubkey = TOKEN_MILL_PROGRAM_ID
) -> TransactionPlan:
    ix = build_release_ix(
        market=accounts.market,
        staking=accounts.staking,
        stake_position=accounts.stake_position,
        vesting_plan=vesting_plan,
        base_token_mint=accounts.base_token_mint,
        market_base_token_ata=accounts.market_base_ata,
        user_base_token_ata=accounts.user_base_ata,
        user=accounts.user,
        program_id=program_id,
    )
    plan = TransactionPlan(fee_payer=accounts.user)
    plan.add(ix, "release")
    return plan


def derive_bid_prices(ask_prices: List[int]) -> List[int]:
    return [price * BID_RATIO_NUM // BID_RATIO_DEN for price in ask_prices]


def compose_set_curve(params: SetCurve, program_id: Pubkey = TOKEN_MILL_PROGRAM_ID) -> TransactionPlan:
    ask_prices = params.ask_prices or DEFAULT_ASK_PRICES
    bid_prices = params.bid_prices if params.bid_prices is not None else derive_bid_prices(ask_prices)
    creator = Pubkey.from_string(params.user_public_key)
    market = Pubkey.from_string(params.market)
    plan = TransactionPlan(fee_payer=creator)
    plan.add(build_set_market_prices_ix(market, creator, bid_prices, ask_prices, program_id), "set_market_prices")
    return plan


def compose_swap(
    accounts: SwapAccounts,
    state: SwapState,
    action: str,
    trade_type: str,
    amount: int,
    other_amount_threshold: int,
    server_swap_authority: Keypair,
    lock_signer: Optional[Keypair] = None,
    program_id: Pubkey = TOKEN_MILL_PROGRAM_ID,
) -> TransactionPlan:
    """Swap with its conditional bootstrap, in fixed order.

    lock -> market quote ATA -> user quote ATA -> user base ATA -> protocol quote ATA
    -> free -> swap.
    ``lock_signer`` is the server-held creator key when the market was created by
    the server wallet; when the user is the creator the client signs the lock.
    """
    if server_swap_authority.pubkey() != accounts.server_swap_authority:
        raise ValueError("server swap authority keypair does not match the derived swap accounts")
    plan = TransactionPlan(fee_payer=accounts.user)

    if state.needs_lock:
        if accounts.creator != accounts.user and (lock_signer is None or lock_signer.pubkey() != accounts.creator):
            raise OnChainPreconditionError(
                f"market lock failed: creator {accounts.creator} must sign lockMarket for {accounts.market}"
            )
        signers = [lock_signer] if lock_signer is not None and accounts.creator != accounts.user else []
        plan.add(
            build_lock_market_ix(
                accounts.market,
                accounts.swap_authority_badge,
                accounts.creator,
                accounts.server_swap_authority,
                program_id,
            ),
            "lock_market",
            signers=signers,
        )
    if state.needs_market_quote_ata:
        plan.add(
            build_create_ata_ix(accounts.user, accounts.market, accounts.quote_token_mint, accounts.market_quote_ata),
            "create_market_quote_ata",
        )
    if state.needs_user_quote_ata:
        plan.add(
            build_create_ata_ix(accounts.user, accounts.user, accounts.quote_token_mint, accounts.user_quote_ata),
            "create_user_quote_ata",
        )
    if state.needs_user_base_ata:
        plan.add(
            build_create_ata_ix(accounts.user, accounts.user, accounts.base_token_mint, accounts.user_base_ata),
            "create_user_base_ata",
        )
    # Skipped when the fee recipient is the user, whose quote ATA is created above.
    if state.needs_protocol_quote_ata and accounts.protocol_quote_ata != accounts.user_quote_ata:
        plan.add(
            build_create_ata_ix(
                accounts.user,
                accounts.protocol_fee_recipient,
                accounts.quote_token_mint,
                accounts.protocol_quote_ata,
            ),
            "create_protocol_quote_ata",
        )
    if state.should_free:
        plan.add(
            build_free_market_ix(
                accounts.market, accounts.swap_authority_badge, accounts.server_swap_authority, program_id
            ),
            "free_market",
            signers=[server_swap_authority],
        )

    swap_authority = swap_authority_for(state, accounts)
    swap_ix = build_permissioned_swap_ix(
        config=accounts.config,
        market=accounts.market,
        base_token_mint=accounts.base_token_mint,
        quote_token_mint=accounts.quote_token_mint,
        market_base_token_ata=accounts.market_base_ata,
        market_quote_token_ata=accounts.market_quote_ata,
        user_base_token_account=accounts.user_base_ata,
        user_quote_token_account=accounts.user_quote_ata,
        protocol_quote_token_ata=accounts.protocol_quote_ata,
        swap_authority=swap_authority,
        swap_authority_badge=None if state.should_free else accounts.swap_authority_badge,
        user=accounts.user,
        action=action,
        trade_type=trade_type,
        amount=amount,
        other_amount_threshold=other_amount_threshold,
        program_id=program_id,
    )
    swap_signers = [] if state.should_free else [server_swap_authority]
    plan.add(swap_ix, "permissioned_swap", signers=swap_signers)
    logger.info(
        "swap_composed market=%s user=%s swap_authority=%s steps=%s",
        accounts.market,
        accounts.user,
        swap_authority,
        ",".join(plan.labels),
    )
    return plan


def compose_free_market(
    market: Pubkey, server_swap_authority: Keypair, program_id: Pubkey = TOKEN_MILL_PROGRAM_ID
) -> TransactionPlan:
    authority = server_swap_authority.pubkey()
    badge = swap_authority_badge_pda(market, authority, program_id)
    plan = TransactionPlan(fee_payer=authority)
    plan.add(build_free_market_ix(market, badge, authority, program_id), "free_market", signers=[server_swap_authority])
    return plan
