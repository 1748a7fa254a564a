from decimal import Decimal

import pytest

from errors import DomainRuleViolation, InvalidRequest
from launch import LaunchBounds, resolve_launch_curve, sol_to_lamports
from operations import LaunchCurve

BOUNDS = LaunchBounds()


def test_just_send_it_uses_standard_settings():
    resolved = resolve_launch_curve(LaunchCurve(mode="justSendIt", bondingCurvePercentage=10, solRaised=1), BOUNDS)
    assert resolved.bonding_curve_percentage == 50
    assert resolved.sol_raised == Decimal(85)
    assert resolved.buy_amount_lamports == 85_000_000_000


def test_launch_lab_accepts_custom_values():
    resolved = resolve_launch_curve(LaunchCurve(mode="launchLab", bondingCurvePercentage=80, solRaised=30.5), BOUNDS)
    assert resolved.bonding_curve_percentage == 80
    assert resolved.buy_amount_lamports == 30_500_000_000
    assert resolved.to_dict()["solRaised"] == "30.5"


@pytest.mark.parametrize("percent", [19, 81])
def test_curve_percentage_out_of_range(percent):
    with pytest.raises(DomainRuleViolation, match="Bonding curve percentage must be between 20% and 80%"):
        resolve_launch_curve(LaunchCurve(mode="launchLab", bondingCurvePercentage=percent, solRaised=40), BOUNDS)


def test_minimum_sol_raised():
    with pytest.raises(DomainRuleViolation, match="Minimum SOL raised must be at least 30 SOL"):
        resolve_launch_curve(LaunchCurve(mode="launchLab", bondingCurvePercentage=50, solRaised=29.99), BOUNDS)


def test_launch_lab_requires_values():
    with pytest.raises(InvalidRequest):
        resolve_launch_curve(LaunchCurve(mode="launchLab"), BOUNDS)


def test_bounds_are_configurable():
    bounds = LaunchBounds(min_curve_percent=10, max_curve_percent=90, min_sol_raised=Decimal(5))
    resolved = resolve_launch_curve(LaunchCurve(mode="launchLab", bondingCurvePercentage=90, solRaised=5), bounds)
    assert resolved.buy_amount_lamports == 5 * 10**9


def test_sol_to_lamports_floors():
    assert sol_to_lamports(Decimal("0.0000000019")) == 1
