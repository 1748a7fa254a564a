from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN

from errors import DomainRuleViolation, InvalidRequest
from operations import LaunchCurve

logger = logging.getLogger("tokenmill.launch")

LAMPORTS_PER_SOL = 10**9


@dataclass(frozen=True)
class LaunchBounds:
    min_curve_percent: int = 20
    max_curve_percent: int = 80
    min_sol_raised: Decimal = Decimal(30)
    just_send_it_sol_raised: Decimal = Decimal(85)
    just_send_it_curve_percent: int = 50


@dataclass(frozen=True)
class LaunchCurveParams:
    mode: str
    bonding_curve_percentage: int
    sol_raised: Decimal
    buy_amount_lamports: int

    def to_dict(self) -> dict:
        return {
            "mode": self.mode,
            "bondingCurvePercentage": self.bonding_curve_percentage,
            "solRaised": str(self.sol_raised),
            "buyAmountLamports": self.buy_amount_lamports,
        }


def sol_to_lamports(sol: Decimal) -> int:
    return int((sol * LAMPORTS_PER_SOL).to_integral_value(rounding=ROUND_DOWN))


def resolve_launch_curve(params: LaunchCurve, bounds: LaunchBounds) -> LaunchCurveParams:
    """Bonding-curve share and SOL raise for a launch, validated before anything is built."""
    if params.mode == "justSendIt":
        percent = bounds.just_send_it_curve_percent
        sol_raised = bounds.just_send_it_sol_raised
    else:
        if params.bonding_curve_percentage is None or params.sol_raised is None:
            raise InvalidRequest("launchLab mode requires bondingCurvePercentage and solRaised")
        percent = int(params.bonding_curve_percentage)
        if percent < bounds.min_curve_percent or percent > bounds.max_curve_percent:
            raise DomainRuleViolation(
                f"Bonding curve percentage must be between {bounds.min_curve_percent}% and {bounds.max_curve_percent}%"
            )
        sol_raised = Decimal(str(params.sol_raised))
        if sol_raised < bounds.min_sol_raised:
            raise DomainRuleViolation(f"Minimum SOL raised must be at least {bounds.min_sol_raised} SOL")
    resolved = LaunchCurveParams(
        mode=params.mode,
        bonding_curve_percentage=percent,
        sol_raised=sol_raised,
        buy_amount_lamports=sol_to_lamports(sol_raised),
    )
    logger.info("launch_curve_resolved mode=%s curve=%s sol_raised=%s", params.mode, percent, sol_raised)
    return resolved
