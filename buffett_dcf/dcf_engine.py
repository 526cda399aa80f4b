import logging
import math
from typing import Any, Dict, List, NamedTuple, Optional, Tuple


logger = logging.getLogger(__name__)

HORIZON_YEARS = 10
SAFETY_MARGIN = 0.7


class DCFComputationError(RuntimeError):
    """Raised when the parameters fall outside the engine's domain."""
    pass


class ValuationParameters(NamedTuple):
    base_cash_flow: float
    growth_rate: float
    discount_rate: float
    terminal_growth_rate: float

    @classmethod
    def from_percentages(
        cls,
        fcf: float,
        growth: float,
        discount: float,
        perpetual: float,
    ) -> "ValuationParameters":
        """Build parameters from slider units (15 means 15%)."""
        return cls(
            base_cash_flow=float(fcf),
            growth_rate=float(growth) / 100.0,
            discount_rate=float(discount) / 100.0,
            terminal_growth_rate=float(perpetual) / 100.0,
        )

    def is_feasible(self) -> bool:
        return self.terminal_growth_rate < self.discount_rate


def _clean_number(value: Optional[float]) -> Optional[float]:
    # Keeps NaN/inf out of JSON payloads; finite values pass through untouched.
    if value is None:
        return None
    try:
        numeric = float(value)
    except Exception:
        return None
    if not math.isfinite(numeric):
        return None
    return numeric


def _validate(params: ValuationParameters) -> None:
    for name, value in params._asdict().items():
        if value is None or not math.isfinite(value):
            raise DCFComputationError(f"non_finite_{name}")
    if params.base_cash_flow < 0:
        raise DCFComputationError("negative_base_cash_flow")


def project_cash_flows(
    base_cash_flow: float,
    growth_rate: float,
    discount_rate: float,
    horizon: int = HORIZON_YEARS,
) -> Tuple[List[Dict[str, float]], float, float]:
    """Compound the base cash flow and discount each year.

    Returns the projection rows, the running stage-1 present value and the
    final-year cash flow. Nothing is rounded here.
    """
    cash_flow = base_cash_flow
    projection: List[Dict[str, float]] = []
    pv_sum = 0.0

    for year in range(1, horizon + 1):
        cash_flow = cash_flow * (1.0 + growth_rate)
        discount_factor = 1.0 / math.pow(1.0 + discount_rate, year)
        pv_cash_flow = cash_flow * discount_factor
        pv_sum += pv_cash_flow
        projection.append(
            {
                "year": year,
                "fcf": cash_flow,
                "discountFactor": discount_factor,
                "pvFcf": pv_cash_flow,
            }
        )

    return projection, pv_sum, cash_flow


def compute_terminal_value(
    final_cash_flow: float,
    discount_rate: float,
    terminal_growth_rate: float,
    horizon: int = HORIZON_YEARS,
) -> Tuple[float, float]:
    """Gordon-growth value after the horizon and its present value."""
    terminal_value = final_cash_flow * (1.0 + terminal_growth_rate) / (discount_rate - terminal_growth_rate)
    pv_terminal = terminal_value / math.pow(1.0 + discount_rate, horizon)
    return terminal_value, pv_terminal


def compute_valuation(
    params: ValuationParameters,
    horizon_years: int = HORIZON_YEARS,
) -> Optional[Dict[str, Any]]:
    """Two-stage DCF for one parameter set.

    Returns None when the perpetual growth rate is not strictly below the
    discount rate. Raises DCFComputationError for negative or non-finite
    inputs, a discount rate at or below -100%, or arithmetic that overflows.
    """
    _validate(params)
    if not params.is_feasible():
        logger.debug(
            "Infeasible parameters: terminal growth %s >= discount %s",
            params.terminal_growth_rate,
            params.discount_rate,
        )
        return None
    if 1.0 + params.discount_rate <= 0:
        raise DCFComputationError("discount_rate_at_or_below_minus_one")

    try:
        projection, stage1_pv, final_cash_flow = project_cash_flows(
            params.base_cash_flow,
            params.growth_rate,
            params.discount_rate,
            horizon_years,
        )
        terminal_value, pv_terminal = compute_terminal_value(
            final_cash_flow,
            params.discount_rate,
            params.terminal_growth_rate,
            horizon_years,
        )
    except (OverflowError, ZeroDivisionError) as exc:
        raise DCFComputationError(f"numeric_overflow: {exc}") from exc
    total = stage1_pv + pv_terminal
    if not math.isfinite(total):
        raise DCFComputationError("non_finite_result")

    multiple = total / params.base_cash_flow if params.base_cash_flow != 0 else 0.0
    tv_ratio = pv_terminal / total * 100.0 if total != 0 else 0.0

    return {
        "settings": {
            "horizonYears": horizon_years,
            "baseCashFlow": params.base_cash_flow,
            "growthRate": params.growth_rate,
            "discountRate": params.discount_rate,
            "terminalGrowthRate": params.terminal_growth_rate,
        },
        "projection": projection,
        "stage1PresentValue": stage1_pv,
        "terminalValue": terminal_value,
        "terminalPresentValue": pv_terminal,
        "totalIntrinsicValue": total,
        "safetyMarginPrice": total * SAFETY_MARGIN,
        "valuationMultiple": multiple,
        "terminalValueRatio": tv_ratio,
    }


def _rounded(value: Optional[float], places: int) -> Optional[float]:
    numeric = _clean_number(value)
    if numeric is None:
        return None
    return round(numeric, places)


def round_for_display(valuation: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy of a valuation rounded the way the calculator shows it."""
    if valuation is None:
        return None
    money_keys = (
        "stage1PresentValue",
        "terminalValue",
        "terminalPresentValue",
        "totalIntrinsicValue",
        "safetyMarginPrice",
    )
    display: Dict[str, Any] = {key: _rounded(valuation.get(key), 2) for key in money_keys}
    display["valuationMultiple"] = _rounded(valuation.get("valuationMultiple"), 1)
    display["terminalValueRatio"] = _rounded(valuation.get("terminalValueRatio"), 1)
    display["projection"] = [
        {
            "year": row["year"],
            "fcf": _rounded(row.get("fcf"), 2),
            "discountFactor": _clean_number(row.get("discountFactor")),
            "pvFcf": _rounded(row.get("pvFcf"), 2),
        }
        for row in valuation.get("projection", [])
    ]
    display["settings"] = dict(valuation.get("settings", {}))
    return display
