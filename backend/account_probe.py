from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from solders.pubkey import Pubkey

from errors import ProbeError

logger = logging.getLogger("tokenmill.probe")

# getMultipleAccounts accepts at most 100 keys per call.
MAX_ACCOUNTS_PER_CALL = 100


class AccountStatus(str, Enum):
    ABSENT = "absent"
    PRESENT_EMPTY = "present_empty"
    PRESENT_WITH_BALANCE = "present_with_balance"


@dataclass(frozen=True)
class AccountState:
    address: Pubkey
    status: AccountStatus
    amount: int = 0
    decimals: int = 0
    data: bytes = b""

    @property
    def exists(self) -> bool:
        return self.status != AccountStatus.ABSENT

    @property
    def ui_amount(self) -> Decimal:
        return Decimal(self.amount).scaleb(-self.decimals)


def _absent(address: Pubkey) -> AccountState:
    return AccountState(address=address, status=AccountStatus.ABSENT)


def _dedupe(addresses: Iterable[Pubkey]) -> List[Pubkey]:
    seen = set()
    ordered: List[Pubkey] = []
    for addr in addresses:
        if addr not in seen:
            seen.add(addr)
            ordered.append(addr)
    return ordered


class AccountProber:
    """Answers "what already exists on-chain" for a set of addresses.

    Existence comes from batched ``getMultipleAccounts`` calls; token balances are
    fetched in parallel with ``getTokenAccountBalance`` only for the addresses the
    caller asks about, and only when the account exists.
    """

    def __init__(self, client, assume_absent_on_error: bool = False):
        self.client = client
        self.assume_absent_on_error = assume_absent_on_error

    async def probe(
        self, addresses: Sequence[Pubkey], with_balance: Iterable[Pubkey] = ()
    ) -> Dict[Pubkey, AccountState]:
        ordered = _dedupe(addresses)
        balance_targets = set(with_balance)
        if not ordered:
            return {}
        try:
            infos = await self._get_multiple(ordered)
        except Exception as exc:  # noqa: BLE001
            if not self.assume_absent_on_error:
                raise ProbeError(f"Failed to probe accounts: {exc}") from exc
            logger.warning("probe_failed_assuming_absent count=%s error=%s", len(ordered), exc)
            return {addr: _absent(addr) for addr in ordered}

        states: Dict[Pubkey, AccountState] = {}
        for addr, info in zip(ordered, infos):
            if info is None:
                states[addr] = _absent(addr)
            else:
                states[addr] = AccountState(
                    address=addr, status=AccountStatus.PRESENT_EMPTY, data=bytes(info.data)
                )

        to_fetch = [addr for addr in ordered if addr in balance_targets and states[addr].exists]
        if to_fetch:
            balances = await asyncio.gather(*(self._token_balance(addr) for addr in to_fetch))
            for addr, balance in zip(to_fetch, balances):
                if balance is None:
                    continue
                amount, decimals = balance
                status = AccountStatus.PRESENT_WITH_BALANCE if amount > 0 else AccountStatus.PRESENT_EMPTY
                states[addr] = AccountState(
                    address=addr, status=status, amount=amount, decimals=decimals, data=states[addr].data
                )

        logger.info(
            "probe_complete %s",
            " ".join(f"{addr}={state.status.value}" for addr, state in states.items()),
        )
        return states

    async def fetch_account(self, address: Pubkey) -> AccountState:
        return (await self.probe([address]))[address]

    async def _get_multiple(self, addresses: List[Pubkey]) -> List[Optional[object]]:
        chunks = [addresses[i : i + MAX_ACCOUNTS_PER_CALL] for i in range(0, len(addresses), MAX_ACCOUNTS_PER_CALL)]
        responses = await asyncio.gather(*(self.client.get_multiple_accounts(chunk) for chunk in chunks))
        infos: List[Optional[object]] = []
        for resp in responses:
            infos.extend(resp.value)
        return infos

    async def _token_balance(self, address: Pubkey):
        try:
            resp = await self.client.get_token_account_balance(address)
            return int(resp.value.amount), int(resp.value.decimals)
        except Exception as exc:  # noqa: BLE001
            if not self.assume_absent_on_error:
                raise ProbeError(f"Failed to fetch token balance for {address}: {exc}") from exc
            logger.warning("balance_probe_failed address=%s error=%s", address, exc)
            return None
