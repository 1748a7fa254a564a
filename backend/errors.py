from __future__ import annotations

from typing import Any, Optional


class TokenMillError(Exception):
    """Base error for every failure surfaced by the transaction builder."""

    status_code = 500
    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message}


class InvalidRequest(TokenMillError):
    status_code = 400


class DomainRuleViolation(TokenMillError):
    status_code = 400


class AccountNotFound(TokenMillError):
    status_code = 404


class ProbeError(TokenMillError):
    status_code = 500
    retryable = True


class BlockhashUnavailable(ProbeError):
    pass


class TransactionTooLarge(TokenMillError):
    status_code = 400


class SigningError(TokenMillError):
    status_code = 500


class OnChainPreconditionError(TokenMillError):
    status_code = 400

    def __init__(self, message: str, payload: Any = None, logs: Optional[list] = None):
        super().__init__(message)
        self.payload = payload
        self.logs = logs or []


class ConfigurationError(TokenMillError):
    status_code = 500
