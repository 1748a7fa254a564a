from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import requests
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from account_probe import AccountProber
from assembler import AssembledTransaction, TransactionAssembler
from composer import (
    BASE_MINT_KEY,
    VESTING_PLAN_KEY,
    compose_create_market,
    compose_free_market,
    compose_release,
    compose_set_curve,
    compose_stake,
    compose_swap,
    compose_vesting,
    derive_staking_accounts,
)
from ephemeral import EphemeralKeys
from errors import (
    AccountNotFound,
    ConfigurationError,
    InvalidRequest,
    OnChainPreconditionError,
    ProbeError,
)
from launch import LaunchBounds, resolve_launch_curve
from operations import CreateMarket, FreeMarket, LaunchCurve, QuoteSwap, Release, SetCurve, Stake, Swap, Vest
from resolver import default_other_amount_threshold, derive_swap_accounts, resolve_swap_state
from tx_builder import (
    U64_MAX,
    MarketAccount,
    derive_ata,
    parse_config_account,
    parse_market_account,
    parse_swap_amounts,
    staking_pda,
)

logger = logging.getLogger("tokenmill.service")


def load_keypair(secret: Optional[str], path: Optional[str], env_name: str) -> Keypair:
    """Keypair from a base58 secret, or a JSON byte array / {"secretKey": [...]} file."""
    if secret:
        try:
            return Keypair.from_base58_string(secret)
        except Exception as exc:  # noqa: BLE001
            raise ConfigurationError(f"Failed to parse {env_name}: {exc}") from exc
    if not path:
        raise ConfigurationError(f"{env_name} not configured")
    if not os.path.exists(path):
        raise ConfigurationError(f"{env_name} keypair file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except Exception as exc:  # noqa: BLE001
        raise ConfigurationError(f"Failed to read {env_name} keypair: {exc}") from exc
    if isinstance(data, list):
        secret_bytes = bytes(data)
    elif isinstance(data, dict) and "secretKey" in data:
        secret_bytes = bytes(data["secretKey"])
    else:
        raise ConfigurationError(f"Unsupported {env_name} keypair format")
    try:
        return Keypair.from_bytes(secret_bytes)
    except Exception as exc:  # noqa: BLE001
        raise ConfigurationError(f"Failed to parse {env_name} keypair: {exc}") from exc


def _pubkey(value: str, field: str) -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except Exception as exc:  # noqa: BLE001
        raise InvalidRequest(f"{field}: invalid public key {value!r}") from exc


def _return_data_bytes(return_data: Any) -> bytes:
    data = getattr(return_data, "data", return_data)
    if isinstance(data, (tuple, list)):
        data = data[0]
    if isinstance(data, str):
        return base64.b64decode(data)
    return bytes(data)


class TokenMillService:
    """Long-lived, read-mostly context shared by every request.

    Holds the RPC client, program ids and the server keys. Nothing here is mutated
    per request apart from lazily loaded keypairs, which are set once.
    """

    def __init__(
        self,
        client,
        settings,
        fallback_client_factory: Callable[[str], object] = AsyncClient,
        das_post: Callable[..., Any] = requests.post,
    ):
        self.client = client
        self.settings = settings
        self.program_id = _pubkey(settings.token_mill_program_id, "TOKEN_MILL_PROGRAM_ID")
        self.config = _pubkey(settings.token_mill_config, "TOKEN_MILL_CONFIG") if settings.token_mill_config else None
        self.quote_token_mint = _pubkey(settings.quote_token_mint, "QUOTE_TOKEN_MINT")
        self.prober = AccountProber(client, assume_absent_on_error=settings.probe_assume_absent_on_error)
        self.assembler = TransactionAssembler(client, settings.fallback_rpc_url, fallback_client_factory)
        self.graduation_threshold = Decimal(str(settings.graduation_threshold))
        self.launch_bounds = LaunchBounds(
            min_curve_percent=settings.launch_min_curve_percent,
            max_curve_percent=settings.launch_max_curve_percent,
            min_sol_raised=Decimal(str(settings.launch_min_sol_raised)),
            just_send_it_sol_raised=Decimal(str(settings.just_send_it_sol_raised)),
            just_send_it_curve_percent=settings.just_send_it_curve_percent,
        )
        self.das_url = settings.das_rpc_url or settings.helius_rpc_url or settings.solana_rpc
        self._das_post = das_post
        self._swap_authority: Optional[Keypair] = None
        self._authority: Optional[Keypair] = None
        self._handlers = {
            "create_market": self.create_market,
            "swap": self.swap,
            "stake": self.stake,
            "vest": self.vest,
            "release": self.release,
            "set_curve": self.set_curve,
            "free_market": self.free_market,
            "quote_swap": self.quote_swap,
            "launch_curve": self.launch_curve,
        }

    async def run(self, op) -> Dict[str, Any]:
        handler = self._handlers.get(op.kind)
        if handler is None:
            raise InvalidRequest(f"Unsupported operation {op.kind}")
        logger.info(
            "pipeline_start operation=%s market=%s user=%s",
            op.kind,
            getattr(op, "market", None) or getattr(op, "market_address", None),
            getattr(op, "user_public_key", None),
        )
        return await handler(op)

    def swap_authority_keypair(self) -> Keypair:
        if self._swap_authority is None:
            self._swap_authority = load_keypair(
                self.settings.swap_authority_key, self.settings.swap_authority_keypair_path, "SWAP_AUTHORITY_KEY"
            )
        return self._swap_authority

    def authority_keypair(self) -> Optional[Keypair]:
        """Server wallet; only needed when it is the creator of a market being locked."""
        if self._authority is None:
            if not (self.settings.authority_key or self.settings.authority_keypair_path):
                return None
            self._authority = load_keypair(
                self.settings.authority_key, self.settings.authority_keypair_path, "AUTHORITY_KEY"
            )
        return self._authority

    def require_config(self) -> Pubkey:
        if self.config is None:
            raise ConfigurationError("TOKEN_MILL_CONFIG not configured")
        return self.config

    async def load_market(self, market: Pubkey) -> MarketAccount:
        state = await self.prober.fetch_account(market)
        if not state.exists:
            raise AccountNotFound(f"Market account {market} not found")
        try:
            return parse_market_account(market, state.data)
        except ValueError as exc:
            raise InvalidRequest(str(exc)) from exc

    async def protocol_fee_recipient(self, config: Pubkey) -> Pubkey:
        if self.settings.protocol_fee_recipient:
            return _pubkey(self.settings.protocol_fee_recipient, "PROTOCOL_FEE_RECIPIENT")
        state = await self.prober.fetch_account(config)
        if not state.exists:
            raise AccountNotFound(f"Config account {config} not found")
        try:
            return parse_config_account(config, state.data).protocol_fee_recipient
        except ValueError as exc:
            raise ProbeError(str(exc)) from exc

    async def create_market(self, op: CreateMarket) -> Dict[str, Any]:
        quote_mint = _pubkey(op.quote_token_mint, "quoteTokenMint") if op.quote_token_mint else self.quote_token_mint
        ephemeral = EphemeralKeys()
        plan, accounts = compose_create_market(op, self.require_config(), quote_mint, ephemeral, self.program_id)
        assembled = await self.assembler.assemble(plan)
        return {
            "transaction": assembled.base64,
            "marketAddress": str(accounts.market),
            "baseTokenMint": str(ephemeral.pubkey(BASE_MINT_KEY)),
        }

    async def stake(self, op: Stake) -> str:
        market = _pubkey(op.market_address, "marketAddress")
        user = _pubkey(op.user_public_key, "userPublicKey")
        staking = staking_pda(market, self.program_id)
        staking_state = await self.prober.fetch_account(staking)
        plan = compose_stake(market, user, staking_state, self.program_id)
        return (await self.assembler.assemble(plan)).base64

    async def vest(self, op: Vest) -> Dict[str, str]:
        accounts = derive_staking_accounts(
            _pubkey(op.market_address, "marketAddress"),
            _pubkey(op.user_public_key, "userPublicKey"),
            _pubkey(op.base_token_mint, "baseTokenMint"),
            self.program_id,
        )
        states = await self.prober.probe(accounts.probe_targets())
        ephemeral = EphemeralKeys()
        plan = compose_vesting(op, accounts, states, ephemeral, self.program_id)
        assembled = await self.assembler.assemble(plan)
        return {
            "transaction": assembled.base64,
            "ephemeralVestingPubkey": str(ephemeral.pubkey(VESTING_PLAN_KEY)),
        }

    async def release(self, op: Release) -> str:
        accounts = derive_staking_accounts(
            _pubkey(op.market_address, "marketAddress"),
            _pubkey(op.user_public_key, "userPublicKey"),
            _pubkey(op.base_token_mint, "baseTokenMint"),
            self.program_id,
        )
        plan = compose_release(accounts, _pubkey(op.vesting_plan_address, "vestingPlanAddress"), self.program_id)
        return (await self.assembler.assemble(plan)).base64

    async def set_curve(self, op: SetCurve) -> str:
        plan = compose_set_curve(op, self.program_id)
        return (await self.assembler.assemble(plan)).base64

    async def _build_swap(self, op: Swap) -> AssembledTransaction:
        market_key = _pubkey(op.market, "market")
        user = _pubkey(op.user_public_key, "userPublicKey")
        market = await self.load_market(market_key)
        quote_mint = _pubkey(op.quote_token_mint, "quoteTokenMint") if op.quote_token_mint else None
        if quote_mint is not None and quote_mint != market.quote_token_mint:
            raise InvalidRequest(
                f"quoteTokenMint {quote_mint} does not match market quote mint {market.quote_token_mint}"
            )
        server_swap_authority = self.swap_authority_keypair()
        fee_recipient = await self.protocol_fee_recipient(market.config)
        accounts = derive_swap_accounts(
            market, user, server_swap_authority.pubkey(), fee_recipient, program_id=self.program_id
        )
        states = await self.prober.probe(accounts.probe_targets(), with_balance=accounts.balance_targets())
        state = resolve_swap_state(accounts, states, self.graduation_threshold)

        threshold = op.other_amount_threshold
        if threshold is None:
            threshold = default_other_amount_threshold(op.action, op.amount, self.settings.default_slippage_bps)
            if threshold > U64_MAX:
                raise InvalidRequest(
                    f"amount: too large to derive a default otherAmountThreshold; pass otherAmountThreshold <= {U64_MAX}"
                )

        lock_signer = None
        if state.needs_lock and market.creator != user:
            authority = self.authority_keypair()
            if authority is not None and authority.pubkey() == market.creator:
                lock_signer = authority
        plan = compose_swap(
            accounts,
            state,
            op.action,
            op.trade_type,
            op.amount,
            threshold,
            server_swap_authority,
            lock_signer=lock_signer,
            program_id=self.program_id,
        )
        return await self.assembler.assemble(plan)

    async def swap(self, op: Swap) -> Dict[str, str]:
        assembled = await self._build_swap(op)
        return {"transaction": assembled.base64}

    async def _simulate(self, assembled: AssembledTransaction):
        try:
            resp = await self.client.simulate_transaction(assembled.transaction, sig_verify=False)
        except Exception as exc:  # noqa: BLE001
            raise ProbeError(f"Failed to simulate transaction: {exc}") from exc
        result = resp.value
        if result.err:
            logger.warning("simulation_failed error=%s", result.err)
            raise OnChainPreconditionError(
                f"Transaction failed: {result.err}", payload=str(result.err), logs=list(result.logs or [])
            )
        return result

    async def quote_swap(self, op: QuoteSwap) -> Dict[str, Any]:
        assembled = await self._build_swap(op)
        result = await self._simulate(assembled)
        base_amount = quote_amount = 0
        if result.return_data is not None:
            try:
                base_amount, quote_amount = parse_swap_amounts(_return_data_bytes(result.return_data))
            except ValueError as exc:
                logger.warning("swap_return_data_unparsed error=%s", exc)
        return {
            "baseAmount": base_amount,
            "quoteAmount": quote_amount,
            "logs": list(result.logs or []),
        }

    async def free_market(self, op: FreeMarket) -> Dict[str, Any]:
        market = _pubkey(op.market, "market")
        plan = compose_free_market(market, self.swap_authority_keypair(), self.program_id)
        assembled = await self.assembler.assemble(plan)
        await self._simulate(assembled)
        try:
            resp = await self.client.send_raw_transaction(
                assembled.wire, opts=TxOpts(skip_preflight=True, preflight_commitment=Confirmed)
            )
        except Exception as exc:  # noqa: BLE001
            raise OnChainPreconditionError(f"Failed to send transaction: {exc}") from exc
        signature = str(resp.value)
        logger.info("free_market_sent market=%s signature=%s", market, signature)
        return {"signature": signature, "market": str(market)}

    async def fetch_asset_metadata(self, asset_id: str) -> Dict[str, Any]:
        body = {"jsonrpc": "2.0", "id": "tokenmill", "method": "getAsset", "params": {"id": asset_id}}
        try:
            resp = await asyncio.to_thread(self._das_post, self.das_url, json=body, timeout=15)
            resp.raise_for_status()
            data = resp.json()
        except Exception as exc:  # noqa: BLE001
            raise ProbeError(f"Failed to fetch asset metadata: {exc}") from exc
        error = data.get("error") or {}
        if "Asset Not Found" in (error.get("message") or ""):
            raise AccountNotFound(f"Asset with ID {asset_id} was not found.")
        if error:
            raise ProbeError(error.get("message") or "Failed to fetch asset metadata.")
        return data.get("result") or {}

    async def graduation(self, market_address: str) -> Dict[str, Any]:
        market_key = _pubkey(market_address, "market")
        market = await self.load_market(market_key)
        market_base_ata = derive_ata(market_key, market.base_token_mint)
        market_quote_ata = derive_ata(market_key, market.quote_token_mint)
        targets = [market_base_ata, market_quote_ata]
        states, asset = await asyncio.gather(
            self.prober.probe(targets, with_balance=targets),
            self.fetch_asset_metadata(str(market.base_token_mint)),
        )
        base_balance = states[market_base_ata].ui_amount
        quote_balance = states[market_quote_ata].ui_amount
        percentage = quote_balance / self.graduation_threshold * 100
        return {
            "baseTokenBalance": float(base_balance),
            "quoteTokenBalance": float(quote_balance),
            "tokenInfo": (asset.get("content") or {}).get("metadata"),
            "graduation": quote_balance >= self.graduation_threshold,
            "graduation_percentage": f"{percentage:.6f}",
        }

    async def launch_curve(self, op: LaunchCurve) -> Dict[str, Any]:
        return resolve_launch_curve(op, self.launch_bounds).to_dict()
