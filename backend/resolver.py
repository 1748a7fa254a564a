from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from solders.pubkey import Pubkey

from account_probe import AccountState
from tx_builder import (
    TOKEN_MILL_PROGRAM_ID,
    MarketAccount,
    derive_ata,
    swap_authority_badge_pda,
)

logger = logging.getLogger("tokenmill.resolver")

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class SwapAccounts:
    market: Pubkey
    config: Pubkey
    creator: Pubkey
    base_token_mint: Pubkey
    quote_token_mint: Pubkey
    user: Pubkey
    server_swap_authority: Pubkey
    swap_authority_badge: Pubkey
    market_base_ata: Pubkey
    market_quote_ata: Pubkey
    user_base_ata: Pubkey
    user_quote_ata: Pubkey
    protocol_fee_recipient: Pubkey
    protocol_quote_ata: Pubkey

    def probe_targets(self) -> List[Pubkey]:
        return [
            self.swap_authority_badge,
            self.market_quote_ata,
            self.user_quote_ata,
            self.user_base_ata,
            self.protocol_quote_ata,
        ]

    def balance_targets(self) -> List[Pubkey]:
        return [self.market_quote_ata]


@dataclass(frozen=True)
class SwapState:
    needs_lock: bool
    needs_market_quote_ata: bool
    needs_user_quote_ata: bool
    needs_user_base_ata: bool
    should_free: bool
    needs_protocol_quote_ata: bool = False
    market_quote_balance: Decimal = Decimal(0)


def derive_swap_accounts(
    market: MarketAccount,
    user: Pubkey,
    server_swap_authority: Pubkey,
    protocol_fee_recipient: Pubkey,
    quote_token_mint: Optional[Pubkey] = None,
    program_id: Pubkey = TOKEN_MILL_PROGRAM_ID,
) -> SwapAccounts:
    quote_mint = quote_token_mint or market.quote_token_mint
    return SwapAccounts(
        market=market.address,
        config=market.config,
        creator=market.creator,
        base_token_mint=market.base_token_mint,
        quote_token_mint=quote_mint,
        user=user,
        server_swap_authority=server_swap_authority,
        swap_authority_badge=swap_authority_badge_pda(market.address, server_swap_authority, program_id),
        market_base_ata=derive_ata(market.address, market.base_token_mint),
        market_quote_ata=derive_ata(market.address, quote_mint),
        user_base_ata=derive_ata(user, market.base_token_mint),
        user_quote_ata=derive_ata(user, quote_mint),
        protocol_fee_recipient=protocol_fee_recipient,
        protocol_quote_ata=derive_ata(protocol_fee_recipient, quote_mint),
    )


def is_graduated(market_quote: AccountState, threshold: Decimal) -> bool:
    return market_quote.exists and market_quote.ui_amount >= threshold


def resolve_swap_state(
    accounts: SwapAccounts, states: Dict[Pubkey, AccountState], graduation_threshold: Decimal
) -> SwapState:
    """Pure mapping from probed account states to the swap branch flags."""
    market_quote = states[accounts.market_quote_ata]
    state = SwapState(
        needs_lock=not states[accounts.swap_authority_badge].exists,
        needs_market_quote_ata=not market_quote.exists,
        needs_user_quote_ata=not states[accounts.user_quote_ata].exists,
        needs_user_base_ata=not states[accounts.user_base_ata].exists,
        should_free=is_graduated(market_quote, graduation_threshold),
        needs_protocol_quote_ata=not states[accounts.protocol_quote_ata].exists,
        market_quote_balance=market_quote.ui_amount,
    )
    logger.info(
        "swap_branch market=%s lock=%s free=%s quote_balance=%s threshold=%s",
        accounts.market,
        state.needs_lock,
        state.should_free,
        state.market_quote_balance,
        graduation_threshold,
    )
    return state


def swap_authority_for(state: SwapState, accounts: SwapAccounts) -> Pubkey:
    return accounts.user if state.should_free else accounts.server_swap_authority


def default_other_amount_threshold(action: str, amount: int, slippage_bps: int = 100) -> int:
    """Floor-rounded slippage bound: below ``amount`` for buys, above it for sells."""
    if action == "buy":
        return amount * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR
    if action == "sell":
        return amount * (BPS_DENOMINATOR + slippage_bps) // BPS_DENOMINATOR
    raise ValueError(f"Unsupported swap action {action}")
