from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Mapping, Optional


class DwellingType(str, Enum):
    APARTMENT = "apartment"
    DETACHED_HOUSE = "detached_house"
    BUSINESS = "business"


class Preference(str, Enum):
    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"


# Wire values used by the chat extraction contract (Italian).
_DWELLING_WIRE: dict[str, DwellingType] = {
    "appartamento": DwellingType.APARTMENT,
    "casa_singola": DwellingType.DETACHED_HOUSE,
    "azienda": DwellingType.BUSINESS,
}
_PREFERENCE_WIRE: dict[str, Preference] = {
    "si": Preference.YES,
    "sì": Preference.YES,
    "no": Preference.NO,
    "non_so": Preference.UNKNOWN,
}


def dwelling_type_from_value(value: Any) -> Optional[DwellingType]:
    if isinstance(value, DwellingType):
        return value
    key = str(value or "").strip().lower()
    if not key:
        return None
    if key in _DWELLING_WIRE:
        return _DWELLING_WIRE[key]
    try:
        return DwellingType(key)
    except ValueError:
        return None


def preference_from_value(value: Any) -> Optional[Preference]:
    if isinstance(value, Preference):
        return value
    key = str(value or "").strip().lower()
    if not key:
        return None
    if key in _PREFERENCE_WIRE:
        return _PREFERENCE_WIRE[key]
    try:
        return Preference(key)
    except ValueError:
        return None


def dwelling_type_to_wire(value: Optional[DwellingType]) -> Optional[str]:
    if value is None:
        return None
    for wire, member in _DWELLING_WIRE.items():
        if member == value:
            return wire
    return None


def preference_to_wire(value: Optional[Preference]) -> Optional[str]:
    if value is None:
        return None
    return {Preference.YES: "si", Preference.NO: "no", Preference.UNKNOWN: "non_so"}[value]


def _optional_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if f != f:  # NaN
        return None
    return f


@dataclass(frozen=True)
class CustomerProfile:
    """
    Data collected from the customer over the chat.

    Only the two numeric fields feed the estimator; the others are carried for the
    summary, the PDF and the conversation flow.
    """

    postal_code: Optional[str] = None
    dwelling_type: Optional[DwellingType] = None
    monthly_consumption_kwh: Optional[float] = None
    monthly_bill_eur: Optional[float] = None
    storage_preference: Optional[Preference] = None
    incentives_preference: Optional[Preference] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "CustomerProfile":
        """
        Build a profile from either the camelCase keys (postalCode, monthlyBillEUR, ...)
        or the chat wire keys (cap, bill_eur, ...). Unknown enum values become None.
        """
        d = dict(data or {})

        def pick(*keys: str) -> Any:
            for k in keys:
                if d.get(k) is not None:
                    return d[k]
            return None

        postal = str(pick("postal_code", "postalCode", "cap") or "").strip()
        return cls(
            postal_code=postal or None,
            dwelling_type=dwelling_type_from_value(pick("dwelling_type", "dwellingType", "dwelling")),
            monthly_consumption_kwh=_optional_float(
                pick("monthly_consumption_kwh", "monthlyConsumptionKWh", "monthly_kwh")
            ),
            monthly_bill_eur=_optional_float(pick("monthly_bill_eur", "monthlyBillEUR", "bill_eur")),
            storage_preference=preference_from_value(pick("storage_preference", "storagePreference", "storage_pref")),
            incentives_preference=preference_from_value(
                pick("incentives_preference", "incentivesPreference", "incentives")
            ),
        )

    def merged_with(self, update: "CustomerProfile") -> "CustomerProfile":
        """
        Overlay `update` on this profile: non-null incoming fields win, nulls keep the prior value.
        """
        return CustomerProfile(
            **{
                name: getattr(update, name) if getattr(update, name) is not None else getattr(self, name)
                for name in self.__dataclass_fields__
            }
        )

    def to_wire(self) -> dict[str, Any]:
        """Mapping in the chat extraction contract shape (used as LLM history)."""
        return {
            "cap": self.postal_code,
            "dwelling": dwelling_type_to_wire(self.dwelling_type),
            "monthly_kwh": self.monthly_consumption_kwh,
            "bill_eur": self.monthly_bill_eur,
            "storage_pref": preference_to_wire(self.storage_preference),
            "incentives": preference_to_wire(self.incentives_preference),
        }


@dataclass(frozen=True)
class QuoteEstimate:
    system_size_kwp: float
    annual_production_kwh: int
    annual_savings_eur: float
    self_sufficiency_percent: int
    current_monthly_bill_eur: int
    projected_monthly_bill_eur: int

    @property
    def is_sentinel(self) -> bool:
        return self == SENTINEL_ESTIMATE

    @property
    def monthly_savings_eur(self) -> int:
        return self.current_monthly_bill_eur - self.projected_monthly_bill_eur

    def to_dict(self) -> dict[str, Any]:
        return {
            "systemSizeKWp": self.system_size_kwp,
            "annualProductionKWh": self.annual_production_kwh,
            "annualSavingsEUR": self.annual_savings_eur,
            "selfSufficiencyPercent": self.self_sufficiency_percent,
            "currentMonthlyBillEUR": self.current_monthly_bill_eur,
            "projectedMonthlyBillEUR": self.projected_monthly_bill_eur,
        }


SENTINEL_ESTIMATE = QuoteEstimate(
    system_size_kwp=0.0,
    annual_production_kwh=0,
    annual_savings_eur=0.0,
    self_sufficiency_percent=0,
    current_monthly_bill_eur=0,
    projected_monthly_bill_eur=0,
)


@dataclass(frozen=True)
class EstimatorConstants:
    # average annual yield per installed kWp
    kwh_per_kwp_year: float
    # grid purchase price, EUR/kWh
    avg_electricity_cost: float
    # fraction of production used on-site
    self_consumption_rate: float
    # price paid for exported surplus, EUR/kWh
    feed_in_tariff: float
    min_system_size_kwp: float = 3.0


ITALY_DEFAULTS = EstimatorConstants(
    kwh_per_kwp_year=1350.0,
    avg_electricity_cost=0.25,
    self_consumption_rate=0.60,
    feed_in_tariff=0.11,
)


def _round_half_up(value: float, digits: int = 0) -> float:
    """
    Round on the exact binary value, ties away from zero for positives.

    Python's built-in `round` uses banker's rounding; quotes must round 2.5 -> 3.
    """
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))


def _usable(value: Optional[float]) -> Optional[float]:
    # Zero, negative and NaN count as "not provided".
    if value is None:
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return float(value)


def estimate(profile: CustomerProfile, *, constants: EstimatorConstants = ITALY_DEFAULTS) -> QuoteEstimate:
    """
    Size a photovoltaic system and estimate savings from monthly consumption and/or bill.

    When only one of the two inputs is known, the other is derived from the average
    electricity cost. With neither, the all-zero sentinel estimate is returned.
    """
    monthly_kwh = _usable(profile.monthly_consumption_kwh)
    monthly_bill = _usable(profile.monthly_bill_eur)

    if monthly_kwh is None and monthly_bill is not None:
        monthly_kwh = monthly_bill / constants.avg_electricity_cost
    elif monthly_bill is None and monthly_kwh is not None:
        monthly_bill = monthly_kwh * constants.avg_electricity_cost

    if not monthly_kwh or not monthly_bill:
        return SENTINEL_ESTIMATE

    annual_consumption_kwh = monthly_kwh * 12

    system_size_kwp = annual_consumption_kwh / constants.kwh_per_kwp_year
    system_size_kwp = _round_half_up(system_size_kwp * 2) / 2
    system_size_kwp = max(system_size_kwp, constants.min_system_size_kwp)

    annual_production_kwh = system_size_kwp * constants.kwh_per_kwp_year

    self_consumed_kwh = annual_production_kwh * constants.self_consumption_rate
    exported_kwh = annual_production_kwh * (1 - constants.self_consumption_rate)

    annual_savings_eur = (
        self_consumed_kwh * constants.avg_electricity_cost + exported_kwh * constants.feed_in_tariff
    )

    current_annual_bill = monthly_bill * 12
    new_annual_bill = max(0.0, current_annual_bill - annual_savings_eur)
    new_monthly_bill = new_annual_bill / 12

    self_sufficiency = min(100, int(_round_half_up(self_consumed_kwh / annual_consumption_kwh * 100)))

    return QuoteEstimate(
        system_size_kwp=_round_half_up(system_size_kwp, 1),
        annual_production_kwh=int(_round_half_up(annual_production_kwh)),
        annual_savings_eur=_round_half_up(annual_savings_eur, 2),
        self_sufficiency_percent=self_sufficiency,
        current_monthly_bill_eur=int(_round_half_up(monthly_bill)),
        projected_monthly_bill_eur=int(_round_half_up(new_monthly_bill)),
    )


def estimate_from_mapping(data: Optional[Mapping[str, Any]]) -> QuoteEstimate:
    return estimate(CustomerProfile.from_mapping(data))
