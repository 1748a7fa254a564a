import hashlib
import os
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from borsh_construct import CStruct, Enum, I64, Option, String, U16, U64, U8
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey


def load_pubkey(env_name: str, default: Optional[str] = None) -> Pubkey:
    value = os.environ.get(env_name) or default
    if not value:
        raise RuntimeError(f"{env_name} must be set to a valid program id")
    try:
        return Pubkey.from_string(value)
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(f"{env_name} is not a valid pubkey: {exc}") from exc


TOKEN_MILL_PROGRAM_ID = load_pubkey("TOKEN_MILL_PROGRAM_ID", "JoeaRXgtME3jAoz5WuFXGEndfv4NPH9nBxsLq44hk9J")
SYS_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
METADATA_PROGRAM_ID = Pubkey.from_string("metaqbxxUerdq28cj1RbAWkYQm3ybzjb6a8bt518x1s")
SYSVAR_RENT_PUBKEY = Pubkey.from_string("SysvarRent111111111111111111111111111111111")
WSOL_MINT = Pubkey.from_string("So11111111111111111111111111111111111111112")

# Seed literals are part of the on-chain compatibility surface.
MARKET_SEED = b"market"
QUOTE_TOKEN_BADGE_SEED = b"quote_token_badge"
MARKET_STAKING_SEED = b"market_staking"
STAKE_POSITION_SEED = b"stake_position"
SWAP_AUTHORITY_SEED = b"swap_authority"
EVENT_AUTHORITY_SEED = b"__event_authority"
METADATA_SEED = b"metadata"

BASE_TOKEN_DECIMALS = 6
PRICES_LENGTH = 11
U64_MAX = 2**64 - 1
I64_MAX = 2**63 - 1


SwapTypeLayout = Enum("Buy" / CStruct(), "Sell" / CStruct(), enum_name="SwapType")
SwapAmountTypeLayout = Enum("ExactInput" / CStruct(), "ExactOutput" / CStruct(), enum_name="SwapAmountType")
CreateMarketWithSplLayout = CStruct(
    "name" / String,
    "symbol" / String,
    "uri" / String,
    "total_supply" / U64,
    "creator_fee_share" / U16,
    "staking_fee_share" / U16,
)
CreateVestingPlanLayout = CStruct(
    "start" / I64,
    "amount" / U64,
    "vesting_duration" / I64,
    "cliff_duration" / I64,
)
SetMarketPricesLayout = CStruct(
    "bid_prices" / U64[PRICES_LENGTH],
    "ask_prices" / U64[PRICES_LENGTH],
)
LockMarketLayout = CStruct("swap_authority" / U8[32])
PermissionedSwapLayout = CStruct(
    "swap_type" / SwapTypeLayout,
    "swap_amount_type" / SwapAmountTypeLayout,
    "amount" / U64,
    "other_amount_threshold" / U64,
)
# Leading fields only; the remainder of the market account is not needed here.
MarketHeaderLayout = CStruct(
    "config" / U8[32],
    "creator" / U8[32],
    "base_token_mint" / U8[32],
    "quote_token_mint" / U8[32],
)
TokenMillConfigLayout = CStruct(
    "authority" / U8[32],
    "pending_authority" / Option(U8[32]),
    "protocol_fee_recipient" / U8[32],
    "protocol_fee_share" / U16,
    "referral_fee_share" / U16,
)
SwapAmountsLayout = CStruct("base_amount" / U64, "quote_amount" / U64)


def sighash(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


MARKET_DISCRIMINATOR = account_discriminator("Market")
CONFIG_DISCRIMINATOR = account_discriminator("TokenMillConfig")


def find_pda(seeds: Sequence[bytes], program_id: Pubkey = TOKEN_MILL_PROGRAM_ID) -> Tuple[Pubkey, int]:
    """Deterministic off-curve address and bump for ``seeds`` under ``program_id``."""
    return Pubkey.find_program_address(list(seeds), program_id)


def market_pda(base_token_mint: Pubkey, program_id: Pubkey = TOKEN_MILL_PROGRAM_ID) -> Pubkey:
    return find_pda([MARKET_SEED, bytes(base_token_mint)], program_id)[0]


def quote_token_badge_pda(config: Pubkey, quote_token_mint: Pubkey, program_id: Pubkey = TOKEN_MILL_PROGRAM_ID) -> Pubkey:
    return find_pda([QUOTE_TOKEN_BADGE_SEED, bytes(config), bytes(quote_token_mint)], program_id)[0]


def staking_pda(market: Pubkey, program_id: Pubkey = TOKEN_MILL_PROGRAM_ID) -> Pubkey:
    return find_pda([MARKET_STAKING_SEED, bytes(market)], program_id)[0]


def stake_position_pda(market: Pubkey, user: Pubkey, program_id: Pubkey = TOKEN_MILL_PROGRAM_ID) -> Pubkey:
    return find_pda([STAKE_POSITION_SEED, bytes(market), bytes(user)], program_id)[0]


def swap_authority_badge_pda(market: Pubkey, swap_authority: Pubkey, program_id: Pubkey = TOKEN_MILL_PROGRAM_ID) -> Pubkey:
    return find_pda([SWAP_AUTHORITY_SEED, bytes(market), bytes(swap_authority)], program_id)[0]


def event_authority_pda(program_id: Pubkey = TOKEN_MILL_PROGRAM_ID) -> Pubkey:
    return find_pda([EVENT_AUTHORITY_SEED], program_id)[0]


def metadata_pda(mint: Pubkey) -> Pubkey:
    return find_pda([METADATA_SEED, bytes(METADATA_PROGRAM_ID), bytes(mint)], METADATA_PROGRAM_ID)[0]


def derive_ata(owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM_ID) -> Pubkey:
    # Owner may be off-curve (market PDAs hold their own token accounts).
    return Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)], ASSOCIATED_TOKEN_PROGRAM_ID
    )[0]


def encode_create_market_with_spl(
    name: str, symbol: str, uri: str, total_supply: int, creator_fee_share: int, staking_fee_share: int
) -> bytes:
    data = CreateMarketWithSplLayout.build(
        {
            "name": name,
            "symbol": symbol,
            "uri": uri,
            "total_supply": total_supply,
            "creator_fee_share": creator_fee_share,
            "staking_fee_share": staking_fee_share,
        }
    )
    return sighash("create_market_with_spl") + data


def encode_create_staking() -> bytes:
    return sighash("create_staking")


def encode_create_stake_position() -> bytes:
    return sighash("create_stake_position")


def encode_create_vesting_plan(start: int, amount: int, vesting_duration: int, cliff_duration: int) -> bytes:
    data = CreateVestingPlanLayout.build(
        {
            "start": start,
            "amount": amount,
            "vesting_duration": vesting_duration,
            "cliff_duration": cliff_duration,
        }
    )
    return sighash("create_vesting_plan") + data


def encode_release() -> bytes:
    return sighash("release")


def encode_set_market_prices(bid_prices: List[int], ask_prices: List[int]) -> bytes:
    if len(bid_prices) != PRICES_LENGTH or len(ask_prices) != PRICES_LENGTH:
        raise ValueError(f"Price curves must have exactly {PRICES_LENGTH} points")
    data = SetMarketPricesLayout.build({"bid_prices": bid_prices, "ask_prices": ask_prices})
    return sighash("set_market_prices") + data


def encode_lock_market(swap_authority: Pubkey) -> bytes:
    return sighash("lock_market") + LockMarketLayout.build({"swap_authority": list(bytes(swap_authority))})


def encode_free_market() -> bytes:
    return sighash("free_market")


def encode_swap_type(action: str):
    if action.lower() == "buy":
        return SwapTypeLayout.enum.Buy()
    if action.lower() == "sell":
        return SwapTypeLayout.enum.Sell()
    raise ValueError(f"Unsupported swap action {action}")


def encode_swap_amount_type(trade_type: str):
    norm = trade_type.replace("_", "").lower()
    if norm == "exactinput":
        return SwapAmountTypeLayout.enum.ExactInput()
    if norm == "exactoutput":
        return SwapAmountTypeLayout.enum.ExactOutput()
    raise ValueError(f"Unsupported trade type {trade_type}")


def encode_permissioned_swap(action: str, trade_type: str, amount: int, other_amount_threshold: int) -> bytes:
    data = PermissionedSwapLayout.build(
        {
            "swap_type": encode_swap_type(action),
            "swap_amount_type": encode_swap_amount_type(trade_type),
            "amount": amount,
            "other_amount_threshold": other_amount_threshold,
        }
    )
    return sighash("permissioned_swap") + data


def _event_cpi_accounts(program_id: Pubkey) -> List[AccountMeta]:
    return [
        AccountMeta(pubkey=event_authority_pda(program_id), is_signer=False, is_writable=False),
        AccountMeta(pubkey=program_id, is_signer=False, is_writable=False),
    ]


def build_create_ata_ix(payer: Pubkey, owner: Pubkey, mint: Pubkey, ata: Optional[Pubkey] = None) -> Instruction:
    ata = ata or derive_ata(owner, mint)
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(ata, is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=False, is_writable=False),
        AccountMeta(mint, is_signer=False, is_writable=False),
        AccountMeta(SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(SYSVAR_RENT_PUBKEY, is_signer=False, is_writable=False),
    ]
    return Instruction(ASSOCIATED_TOKEN_PROGRAM_ID, b"", accounts)


def build_create_market_ix(
    config: Pubkey,
    market: Pubkey,
    base_token_mint: Pubkey,
    base_token_metadata: Pubkey,
    market_base_token_ata: Pubkey,
    quote_token_mint: Pubkey,
    quote_token_badge: Pubkey,
    creator: Pubkey,
    name: str,
    symbol: str,
    uri: str,
    total_supply: int,
    creator_fee_share: int,
    staking_fee_share: int,
    program_id: Pubkey = TOKEN_MILL_PROGRAM_ID,
) -> Instruction:
    accounts: List[AccountMeta] = [
        AccountMeta(pubkey=config, is_signer=False, is_writable=False),
        AccountMeta(pubkey=market, is_signer=False, is_writable=True),
        AccountMeta(pubkey=base_token_mint, is_signer=True, is_writable=True),
        AccountMeta(pubkey=base_token_metadata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=market_base_token_ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=quote_token_badge, is_signer=False, is_writable=False),
        AccountMeta(pubkey=quote_token_mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=creator, is_signer=True, is_writable=True),
        AccountMeta(pubkey=METADATA_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYSVAR_RENT_PUBKEY, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=ASSOCIATED_TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    accounts.extend(_event_cpi_accounts(program_id))
    data = encode_create_market_with_spl(name, symbol, uri, total_supply, creator_fee_share, staking_fee_share)
    return Instruction(program_id=program_id, data=data, accounts=accounts)


def build_create_staking_ix(
    market: Pubkey, staking: Pubkey, payer: Pubkey, program_id: Pubkey = TOKEN_MILL_PROGRAM_ID
) -> Instruction:
    accounts = [
        AccountMeta(pubkey=market, is_signer=False, is_writable=False),
        AccountMeta(pubkey=staking, is_signer=False, is_writable=True),
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=program_id, data=encode_create_staking(), accounts=accounts)


def build_create_stake_position_ix(
    market: Pubkey, stake_position: Pubkey, user: Pubkey, program_id: Pubkey = TOKEN_MILL_PROGRAM_ID
) -> Instruction:
    accounts = [
        AccountMeta(pubkey=market, is_signer=False, is_writable=False),
        AccountMeta(pubkey=stake_position, is_signer=False, is_writable=True),
        AccountMeta(pubkey=user, is_signer=True, is_writable=True),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=program_id, data=encode_create_stake_position(), accounts=accounts)


def build_create_vesting_plan_ix(
    market: Pubkey,
    staking: Pubkey,
    stake_position: Pubkey,
    vesting_plan: Pubkey,
    base_token_mint: Pubkey,
    market_base_token_ata: Pubkey,
    user_base_token_ata: Pubkey,
    user: Pubkey,
    start: int,
    amount: int,
    vesting_duration: int,
    cliff_duration: int,
    program_id: Pubkey = TOKEN_MILL_PROGRAM_ID,
) -> Instruction:
    accounts: List[AccountMeta] = [
        AccountMeta(pubkey=market, is_signer=False, is_writable=False),
        AccountMeta(pubkey=staking, is_signer=False, is_writable=True),
        AccountMeta(pubkey=stake_position, is_signer=False, is_writable=True),
        AccountMeta(pubkey=vesting_plan, is_signer=True, is_writable=True),
        AccountMeta(pubkey=base_token_mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=market_base_token_ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=user_base_token_ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=user, is_signer=True, is_writable=True),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    accounts.extend(_event_cpi_accounts(program_id))
    data = encode_create_vesting_plan(start, amount, vesting_duration, cliff_duration)
    return Instruction(program_id=program_id, data=data, accounts=accounts)


def build_release_ix(
    market: Pubkey,
    staking: Pubkey,
    stake_position: Pubkey,
    vesting_plan: Pubkey,
    base_token_mint: Pubkey,
    market_base_token_ata: Pubkey,
    user_base_token_ata: Pubkey,
    user: Pubkey,
    program_id: Pubkey = TOKEN_MILL_PROGRAM_ID,
) -> Instruction:
    accounts: List[AccountMeta] = [
        AccountMeta(pubkey=market, is_signer=False, is_writable=False),
        AccountMeta(pubkey=staking, is_signer=False, is_writable=True),
        AccountMeta(pubkey=stake_position, is_signer=False, is_writable=True),
        AccountMeta(pubkey=vesting_plan, is_signer=False, is_writable=True),
        AccountMeta(pubkey=market_base_token_ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=user_base_token_ata, is_signer=False, is_writable=True),
        AccountMeta(pubkey=base_token_mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=user, is_signer=True, is_writable=False),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    accounts.extend(_event_cpi_accounts(program_id))
    return Instruction(program_id=program_id, data=encode_release(), accounts=accounts)


def build_set_market_prices_ix(
    market: Pubkey,
    creator: Pubkey,
    bid_prices: List[int],
    ask_prices: List[int],
    program_id: Pubkey = TOKEN_MILL_PROGRAM_ID,
) -> Instruction:
    accounts: List[AccountMeta] = [
        AccountMeta(pubkey=market, is_signer=False, is_writable=True),
        AccountMeta(pubkey=creator, is_signer=True, is_writable=False),
    ]
    accounts.extend(_event_cpi_accounts(program_id))
    data = encode_set_market_prices(bid_prices, ask_prices)
    return Instruction(program_id=program_id, data=data, accounts=accounts)


def build_lock_market_ix(
    market: Pubkey,
    swap_authority_badge: Pubkey,
    creator: Pubkey,
    swap_authority: Pubkey,
    program_id: Pubkey = TOKEN_MILL_PROGRAM_ID,
) -> Instruction:
    accounts = [
        AccountMeta(pubkey=market, is_signer=False, is_writable=True),
        AccountMeta(pubkey=swap_authority_badge, is_signer=False, is_writable=True),
        AccountMeta(pubkey=creator, is_signer=True, is_writable=True),
        AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=program_id, data=encode_lock_market(swap_authority), accounts=accounts)


def build_free_market_ix(
    market: Pubkey,
    swap_authority_badge: Pubkey,
    swap_authority: Pubkey,
    program_id: Pubkey = TOKEN_MILL_PROGRAM_ID,
) -> Instruction:
    accounts = [
        AccountMeta(pubkey=market, is_signer=False, is_writable=True),
        AccountMeta(pubkey=swap_authority_badge, is_signer=False, is_writable=True),
        AccountMeta(pubkey=swap_authority, is_signer=True, is_writable=True),
    ]
    return Instruction(program_id=program_id, data=encode_free_market(), accounts=accounts)


def build_permissioned_swap_ix(
    config: Pubkey,
    market: Pubkey,
    base_token_mint: Pubkey,
    quote_token_mint: Pubkey,
    market_base_token_ata: Pubkey,
    market_quote_token_ata: Pubkey,
    user_base_token_account: Pubkey,
    user_quote_token_account: Pubkey,
    protocol_quote_token_ata: Pubkey,
    swap_authority: Pubkey,
    swap_authority_badge: Optional[Pubkey],
    user: Pubkey,
    action: str,
    trade_type: str,
    amount: int,
    other_amount_threshold: int,
    referral_token_account: Optional[Pubkey] = None,
    program_id: Pubkey = TOKEN_MILL_PROGRAM_ID,
) -> Instruction:
    # Anchor encodes an omitted optional account as the program id itself.
    named_accounts: List[Tuple[str, AccountMeta]] = [
        ("config", AccountMeta(pubkey=config, is_signer=False, is_writable=False)),
        ("market", AccountMeta(pubkey=market, is_signer=False, is_writable=True)),
        ("base_token_mint", AccountMeta(pubkey=base_token_mint, is_signer=False, is_writable=False)),
        ("quote_token_mint", AccountMeta(pubkey=quote_token_mint, is_signer=False, is_writable=False)),
        ("market_base_token_ata", AccountMeta(pubkey=market_base_token_ata, is_signer=False, is_writable=True)),
        ("market_quote_token_ata", AccountMeta(pubkey=market_quote_token_ata, is_signer=False, is_writable=True)),
        ("user_base_token_account", AccountMeta(pubkey=user_base_token_account, is_signer=False, is_writable=True)),
        ("user_quote_token_account", AccountMeta(pubkey=user_quote_token_account, is_signer=False, is_writable=True)),
        ("protocol_quote_token_ata", AccountMeta(pubkey=protocol_quote_token_ata, is_signer=False, is_writable=True)),
        (
            "referral_token_account",
            AccountMeta(pubkey=referral_token_account or program_id, is_signer=False, is_writable=referral_token_account is not None),
        ),
        ("swap_authority", AccountMeta(pubkey=swap_authority, is_signer=True, is_writable=False)),
        (
            "swap_authority_badge",
            AccountMeta(pubkey=swap_authority_badge or program_id, is_signer=False, is_writable=False),
        ),
        ("user", AccountMeta(pubkey=user, is_signer=True, is_writable=False)),
        ("base_token_program", AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False)),
        ("quote_token_program", AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False)),
    ]
    accounts: List[AccountMeta] = [meta for _, meta in named_accounts]
    accounts.extend(_event_cpi_accounts(program_id))
    data = encode_permissioned_swap(action, trade_type, amount, other_amount_threshold)
    return Instruction(program_id=program_id, data=data, accounts=accounts)


@dataclass(frozen=True)
class MarketAccount:
    address: Pubkey
    config: Pubkey
    creator: Pubkey
    base_token_mint: Pubkey
    quote_token_mint: Pubkey


@dataclass(frozen=True)
class TokenMillConfigAccount:
    address: Pubkey
    authority: Pubkey
    protocol_fee_recipient: Pubkey
    protocol_fee_share: int
    referral_fee_share: int


def parse_market_account(address: Pubkey, data: bytes) -> MarketAccount:
    if len(data) < 8 + MarketHeaderLayout.sizeof() or data[:8] != MARKET_DISCRIMINATOR:
        raise ValueError(f"{address} is not a Token Mill market account")
    parsed = MarketHeaderLayout.parse(data[8:])
    return MarketAccount(
        address=address,
        config=Pubkey.from_bytes(bytes(parsed.config)),
        creator=Pubkey.from_bytes(bytes(parsed.creator)),
        base_token_mint=Pubkey.from_bytes(bytes(parsed.base_token_mint)),
        quote_token_mint=Pubkey.from_bytes(bytes(parsed.quote_token_mint)),
    )


def parse_config_account(address: Pubkey, data: bytes) -> TokenMillConfigAccount:
    if data[:8] != CONFIG_DISCRIMINATOR:
        raise ValueError(f"{address} is not a Token Mill config account")
    parsed = TokenMillConfigLayout.parse(data[8:])
    return TokenMillConfigAccount(
        address=address,
        authority=Pubkey.from_bytes(bytes(parsed.authority)),
        protocol_fee_recipient=Pubkey.from_bytes(bytes(parsed.protocol_fee_recipient)),
        protocol_fee_share=parsed.protocol_fee_share,
        referral_fee_share=parsed.referral_fee_share,
    )


def parse_swap_amounts(data: bytes) -> Tuple[int, int]:
    if len(data) < SwapAmountsLayout.sizeof():
        raise ValueError(f"swap return data too short: {len(data)} bytes")
    parsed = SwapAmountsLayout.parse(data[: SwapAmountsLayout.sizeof()])
    return parsed.base_amount, parsed.quote_amount
