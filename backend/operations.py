from __future__ import annotations

from typing import Annotated, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
from solders.pubkey import Pubkey

from tx_builder import BASE_TOKEN_DECIMALS, I64_MAX, PRICES_LENGTH, U64_MAX

MAX_TOTAL_SUPPLY = U64_MAX // 10**BASE_TOKEN_DECIMALS


def _check_pubkey(value: str) -> str:
    try:
        Pubkey.from_string(value)
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"invalid public key {value!r}") from exc
    return value


PubkeyStr = Annotated[str, AfterValidator(_check_pubkey)]


class Operation(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class CreateMarket(Operation):
    kind: Literal["create_market"] = "create_market"
    user_public_key: PubkeyStr
    name: str = Field(min_length=1, max_length=32)
    symbol: str = Field(min_length=1, max_length=10)
    uri: str = Field(min_length=1, max_length=200)
    total_supply: int = Field(gt=0, le=MAX_TOTAL_SUPPLY, description="Whole tokens; scaled by 10**6 on-chain")
    creator_fee_share: int = Field(ge=0, le=10_000)
    staking_fee_share: int = Field(ge=0, le=10_000)
    quote_token_mint: Optional[PubkeyStr] = None

    @model_validator(mode="after")
    def shares_within_total(self) -> "CreateMarket":
        if self.creator_fee_share + self.staking_fee_share > 10_000:
            raise ValueError("creatorFeeShare + stakingFeeShare must not exceed 10000")
        return self


class Swap(Operation):
    kind: Literal["swap"] = "swap"
    user_public_key: PubkeyStr
    market: PubkeyStr
    quote_token_mint: Optional[PubkeyStr] = None
    action: Literal["buy", "sell"]
    trade_type: Literal["exactInput", "exactOutput"]
    amount: int = Field(gt=0, le=U64_MAX)
    other_amount_threshold: Optional[int] = Field(default=None, ge=0, le=U64_MAX)


class Stake(Operation):
    kind: Literal["stake"] = "stake"
    user_public_key: PubkeyStr
    market_address: PubkeyStr


class Vest(Operation):
    kind: Literal["vest"] = "vest"
    user_public_key: PubkeyStr
    market_address: PubkeyStr
    base_token_mint: PubkeyStr
    amount: int = Field(gt=0, le=U64_MAX)
    start_time: int = Field(ge=0, le=I64_MAX)
    duration: int = Field(gt=0, le=I64_MAX)
    cliff_duration: int = Field(default=0, ge=0, le=I64_MAX)

    @model_validator(mode="after")
    def cliff_within_duration(self) -> "Vest":
        if self.cliff_duration > self.duration:
            raise ValueError("cliffDuration must not exceed duration")
        return self


class Release(Operation):
    kind: Literal["release"] = "release"
    user_public_key: PubkeyStr
    market_address: PubkeyStr
    vesting_plan_address: PubkeyStr
    base_token_mint: PubkeyStr


class SetCurve(Operation):
    kind: Literal["set_curve"] = "set_curve"
    user_public_key: PubkeyStr
    market: PubkeyStr
    ask_prices: Optional[List[int]] = None
    bid_prices: Optional[List[int]] = None

    @field_validator("ask_prices", "bid_prices")
    @classmethod
    def curve_shape(cls, value: Optional[List[int]]) -> Optional[List[int]]:
        if value is None:
            return value
        if len(value) != PRICES_LENGTH:
            raise ValueError(f"must contain exactly {PRICES_LENGTH} prices")
        if any(p < 0 or p > U64_MAX for p in value):
            raise ValueError(f"prices must be between 0 and {U64_MAX}")
        if any(b < a for a, b in zip(value, value[1:])):
            raise ValueError("prices must be non-decreasing")
        return value

    @model_validator(mode="after")
    def bids_below_asks(self) -> "SetCurve":
        if self.bid_prices is not None and self.ask_prices is None:
            raise ValueError("bidPrices requires askPrices")
        if self.bid_prices is not None and any(b > a for a, b in zip(self.ask_prices, self.bid_prices)):
            raise ValueError("each bid price must not exceed the matching ask price")
        return self


class FreeMarket(Operation):
    kind: Literal["free_market"] = "free_market"
    market: PubkeyStr


class QuoteSwap(Swap):
    kind: Literal["quote_swap"] = "quote_swap"


class LaunchCurve(Operation):
    kind: Literal["launch_curve"] = "launch_curve"
    mode: Literal["justSendIt", "launchLab"] = "justSendIt"
    bonding_curve_percentage: Optional[float] = None
    sol_raised: Optional[float] = None


OperationVariant = Union[CreateMarket, Swap, Stake, Vest, Release, SetCurve, FreeMarket, QuoteSwap, LaunchCurve]
