from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from solana.rpc.async_api import AsyncClient
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from errors import BlockhashUnavailable, SigningError, TransactionTooLarge

logger = logging.getLogger("tokenmill.assembler")

# Maximum serialized transaction size accepted by the cluster.
PACKET_DATA_SIZE = 1232


class TransactionPlan:
    """Ordered (instruction, required local signers) pairs for one transaction."""

    def __init__(self, fee_payer: Pubkey):
        self.fee_payer = fee_payer
        self.instructions: List[Instruction] = []
        self.labels: List[str] = []
        self._signers: Dict[Pubkey, Keypair] = {}

    def add(self, ix: Instruction, label: str = "", signers: Iterable[Keypair] = ()) -> "TransactionPlan":
        self.instructions.append(ix)
        self.labels.append(label or f"ix{len(self.instructions)}")
        for kp in signers:
            self.add_signer(kp)
        return self

    def add_signer(self, kp: Keypair) -> None:
        self._signers[kp.pubkey()] = kp

    @property
    def signers(self) -> List[Keypair]:
        return list(self._signers.values())

    def __len__(self) -> int:
        return len(self.instructions)


@dataclass
class AssembledTransaction:
    transaction: VersionedTransaction
    blockhash: Hash

    @property
    def wire(self) -> bytes:
        return bytes(self.transaction)

    @property
    def base64(self) -> str:
        return serialize_transaction(self.transaction)

    def signed_by(self) -> List[str]:
        keys = self.transaction.message.account_keys
        return [str(keys[i]) for i, sig in enumerate(self.transaction.signatures) if sig != Signature.default()]


def compile_plan(plan: TransactionPlan, blockhash: Hash) -> MessageV0:
    if not plan.instructions:
        raise ValueError("Cannot assemble a transaction with no instructions")
    try:
        return MessageV0.try_compile(plan.fee_payer, plan.instructions, [], blockhash)
    except Exception as exc:  # noqa: BLE001
        raise TransactionTooLarge(f"Failed to compile transaction: {exc}") from exc


def finalize(plan: TransactionPlan, blockhash: Hash, max_size: int = PACKET_DATA_SIZE) -> VersionedTransaction:
    """Compile, sign with every locally held key and leave the remaining slots empty."""
    message = compile_plan(plan, blockhash)
    required = message.header.num_required_signatures
    signer_keys = list(message.account_keys[:required])
    signatures: List[Signature] = [Signature.default()] * required
    message_bytes = to_bytes_versioned(message)
    for kp in plan.signers:
        pubkey = kp.pubkey()
        try:
            idx = signer_keys.index(pubkey)
        except ValueError:
            raise SigningError(f"Local signer {pubkey} is not a required signer of this transaction") from None
        signatures[idx] = kp.sign_message(message_bytes)
    tx = VersionedTransaction.populate(message, signatures)
    size = len(bytes(tx))
    if size > max_size:
        raise TransactionTooLarge(
            f"Transaction is {size} bytes, exceeding the {max_size} byte limit ({len(plan)} instructions)"
        )
    return tx


def serialize_transaction(tx: VersionedTransaction) -> str:
    return base64.b64encode(bytes(tx)).decode()


def decode_transaction(tx_b64: str) -> VersionedTransaction:
    return VersionedTransaction.from_bytes(base64.b64decode(tx_b64))


def _writable(index: int, header, total: int) -> bool:
    required = header.num_required_signatures
    if index < required:
        return index < required - header.num_readonly_signed_accounts
    return index < total - header.num_readonly_unsigned_accounts


def decompile_instructions(message) -> List[Instruction]:
    """Rebuild instructions from a compiled message with only static account keys."""
    keys = list(message.account_keys)
    header = message.header
    out: List[Instruction] = []
    for compiled in message.instructions:
        accounts = [
            AccountMeta(
                pubkey=keys[idx],
                is_signer=idx < header.num_required_signatures,
                is_writable=_writable(idx, header, len(keys)),
            )
            for idx in bytes(compiled.accounts)
        ]
        out.append(Instruction(keys[compiled.program_id_index], bytes(compiled.data), accounts))
    return out


class TransactionAssembler:
    def __init__(
        self,
        client,
        fallback_rpc_url: str,
        fallback_client_factory: Callable[[str], object] = AsyncClient,
        max_size: int = PACKET_DATA_SIZE,
    ):
        self.client = client
        self.fallback_rpc_url = fallback_rpc_url
        self.fallback_client_factory = fallback_client_factory
        self.max_size = max_size

    async def latest_blockhash(self) -> Hash:
        try:
            resp = await self.client.get_latest_blockhash()
            return resp.value.blockhash
        except Exception as exc:  # noqa: BLE001
            logger.warning("blockhash_primary_failed fallback=%s error=%s", self.fallback_rpc_url, exc)
            primary_error = exc
        fallback = self.fallback_client_factory(self.fallback_rpc_url)
        try:
            resp = await fallback.get_latest_blockhash()
            return resp.value.blockhash
        except Exception as exc:  # noqa: BLE001
            raise BlockhashUnavailable(
                f"Failed to fetch blockhash: primary error={primary_error} fallback error={exc}"
            ) from exc
        finally:
            await fallback.close()

    async def assemble(self, plan: TransactionPlan, blockhash: Optional[Hash] = None) -> AssembledTransaction:
        if blockhash is None:
            blockhash = await self.latest_blockhash()
        tx = finalize(plan, blockhash, self.max_size)
        assembled = AssembledTransaction(transaction=tx, blockhash=blockhash)
        logger.info(
            "transaction_assembled steps=%s size=%s signed_by=%s",
            ",".join(plan.labels),
            len(assembled.wire),
            ",".join(assembled.signed_by()),
        )
        return assembled
