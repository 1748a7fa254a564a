from __future__ import annotations

from typing import Dict

from solders.keypair import Keypair
from solders.pubkey import Pubkey


class EphemeralKeys:
    """One-shot keypairs for accounts created inside the transaction being built.

    Secrets live only for the duration of a single build and are handed to the
    assembler for partial signing. Only labels and public keys are ever exposed.
    """

    def __init__(self) -> None:
        self._keys: Dict[str, Keypair] = {}

    def generate(self, label: str) -> Pubkey:
        if label in self._keys:
            raise ValueError(f"ephemeral key {label!r} already generated")
        kp = Keypair()
        self._keys[label] = kp
        return kp.pubkey()

    def pubkey(self, label: str) -> Pubkey:
        return self._keys[label].pubkey()

    def signer(self, label: str) -> Keypair:
        return self._keys[label]

    def public_keys(self) -> Dict[str, str]:
        return {label: str(kp.pubkey()) for label, kp in self._keys.items()}

    def __repr__(self) -> str:
        return f"EphemeralKeys({self.public_keys()!r})"
