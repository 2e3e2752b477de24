"""
Import Duty Calculator

Computes import duty (DDI) and import VAT from a resolved tariff:

    duty         = CIF × DDI%
    taxable base = CIF + duty
    VAT          = taxable base × TVA%
    total duties = duty + VAT
    total cost   = CIF + total duties

When the tariff is a range (coarse code whose sub-lines carry different
rates) the rate used is chosen by RANGE_POLICY; "mean" of min/max is the
default. Amounts are computed with Decimal and rounded half-up to cents.

Also provides the customs value (CAF) computation from an incoterm and a
currency conversion table for amounts quoted in foreign currency.
"""

from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from app.config import DEFAULT_VAT_RATE
from app.rag.inheritance import RATE_INHERITED, RATE_RANGE, EffectiveTariff

CENT = Decimal("0.01")

RANGE_POLICY_MEAN = "mean"
RANGE_POLICY_MAX = "max"
RANGE_POLICY_MIN = "min"
RANGE_POLICY = RANGE_POLICY_MEAN

# Flat insurance when the incoterm excludes it (0.5% of value + freight)
DEFAULT_INSURANCE_RATE = Decimal("0.005")

# Indicative MAD conversion rates; the declaration uses the official daily rate
EXCHANGE_RATES = {
    "MAD": Decimal("1"),
    "USD": Decimal("10.2"),
    "EUR": Decimal("10.85"),
    "GBP": Decimal("12.8"),
    "CNY": Decimal("1.4"),
    "AED": Decimal("2.78"),
    "SAR": Decimal("2.72"),
    "CAD": Decimal("7.5"),
    "CHF": Decimal("11.5"),
    "JPY": Decimal("0.068"),
    "KRW": Decimal("0.0076"),
}


def _money(value: Decimal) -> float:
    return float(value.quantize(CENT, rounding=ROUND_HALF_UP))


def _dec(value) -> Decimal:
    return Decimal(str(value))


@dataclass
class DutyCalculation:
    cif_value: float
    duty_rate_used: float
    vat_rate: float
    duty_amount: float
    taxable_base: float
    vat_amount: float
    total_duties: float
    total_cost: float
    rate_source: str
    is_range: bool = False
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def select_duty_rate(tariff: EffectiveTariff, policy: str = RANGE_POLICY) -> Optional[Decimal]:
    """Rate to apply, or None when the tariff has no usable rate."""
    if tariff.rate_source == RATE_RANGE and tariff.duty_rate_min is not None and tariff.duty_rate_max is not None:
        low, high = _dec(tariff.duty_rate_min), _dec(tariff.duty_rate_max)
        if policy == RANGE_POLICY_MAX:
            return high
        if policy == RANGE_POLICY_MIN:
            return low
        return (low + high) / 2
    if tariff.duty_rate is not None:
        return _dec(tariff.duty_rate)
    return None


def calculate_duties(tariff: EffectiveTariff, cif_value: float,
                     range_policy: str = RANGE_POLICY) -> DutyCalculation:
    """
    Duty and VAT for a CIF value.

    Args:
        tariff: Resolved tariff (any rate_source)
        cif_value: Customs value (CIF) in MAD
        range_policy: How to pick a rate for "range" tariffs

    Returns:
        DutyCalculation with every amount rounded to 2 decimals
    """
    warnings: List[str] = []
    cif = _dec(cif_value)

    rate = select_duty_rate(tariff, range_policy)
    is_range = tariff.rate_source == RATE_RANGE
    if is_range and rate is not None:
        warnings.append(
            f"Taux variable selon la sous-position ({tariff.duty_rate_min}% à {tariff.duty_rate_max}%). "
            f"Calcul effectué avec un taux de {_money(rate)}% ({range_policy}). Précisez le code complet."
        )
    elif tariff.rate_source == RATE_INHERITED:
        warnings.append(
            f"Taux hérité de {tariff.children_count} sous-position(s) ayant le même taux."
        )
    if rate is None:
        rate = Decimal("0")
        warnings.append("Taux de droit non trouvé: calcul effectué avec 0%. Vérifiez le code SH.")

    if tariff.is_prohibited:
        warnings.append("Ce produit est INTERDIT à l'importation.")
    if tariff.is_restricted:
        warnings.append("Ce produit est soumis à restriction: une licence peut être requise.")
    for control in tariff.controls:
        warnings.append(f"Contrôle requis: {control.type} ({control.authority})")

    vat_rate = _dec(tariff.vat_rate if tariff.vat_rate is not None else DEFAULT_VAT_RATE)

    duty = cif * rate / 100
    taxable = cif + duty
    vat = taxable * vat_rate / 100
    total_duties = duty + vat
    total_cost = cif + total_duties

    return DutyCalculation(
        cif_value=_money(cif),
        duty_rate_used=float(rate),
        vat_rate=float(vat_rate),
        duty_amount=_money(duty),
        taxable_base=_money(taxable),
        vat_amount=_money(vat),
        total_duties=_money(total_duties),
        total_cost=_money(total_cost),
        rate_source=tariff.rate_source,
        is_range=is_range,
        warnings=warnings,
    )


def compute_caf(value: float, incoterm: str = "CIF", freight: Optional[float] = None,
                insurance: Optional[float] = None) -> float:
    """
    Customs value (CAF) from an invoice value and its incoterm.

    CIF/CIP already include freight and insurance. CFR/CPT include freight
    only. Any other incoterm (FOB, EXW, FCA...) adds both; missing insurance
    defaults to 0.5% of value + freight.
    """
    term = (incoterm or "CIF").upper()
    caf = _dec(value)
    if term in ("CIF", "CIP"):
        return _money(caf)
    if term in ("CFR", "CPT"):
        ins = _dec(insurance) if insurance is not None else caf * DEFAULT_INSURANCE_RATE
        return _money(caf + ins)

    fr = _dec(freight) if freight is not None else Decimal("0")
    ins = _dec(insurance) if insurance is not None else (caf + fr) * DEFAULT_INSURANCE_RATE
    return _money(caf + fr + ins)


def convert_to_mad(amount: float, currency: str = "MAD") -> float:
    """Convert an amount to MAD with the indicative table."""
    rate = EXCHANGE_RATES.get((currency or "MAD").upper())
    if rate is None:
        raise ValueError(f"Unsupported currency: {currency}")
    return _money(_dec(amount) * rate)
