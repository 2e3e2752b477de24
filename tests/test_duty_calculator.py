"""
Duty Calculator Tests

Tests:
- Duty, taxable base, VAT and totals for a direct rate
- Range policy (mean by default, min/max on request)
- Missing rate, prohibition and control warnings
- CAF from incoterms and currency conversion
"""

import pytest


def _tariff(rate_source="direct", duty_rate=2.5, vat_rate=20.0, **kwargs):
    from app.rag.inheritance import EffectiveTariff

    tariff = EffectiveTariff.empty(kwargs.pop("code", "847130"))
    tariff.found = rate_source != "not_found"
    tariff.rate_source = rate_source
    tariff.duty_rate = duty_rate
    tariff.vat_rate = vat_rate
    for name, value in kwargs.items():
        setattr(tariff, name, value)
    return tariff


class TestCalculateDuties:

    def test_direct_rate(self):
        """10,000 MAD at 2.5% DDI and 20% TVA."""
        from app.services.duty_calculator import calculate_duties

        calc = calculate_duties(_tariff(), 10000)

        assert calc.duty_amount == 250.0
        assert calc.taxable_base == 10250.0
        assert calc.vat_amount == 2050.0
        assert calc.total_duties == 2300.0
        assert calc.total_cost == 12300.0
        assert calc.is_range is False
        assert calc.warnings == []

    def test_range_uses_mean_by_default(self):
        from app.services.duty_calculator import calculate_duties

        tariff = _tariff("range", duty_rate=None, duty_rate_min=2.5, duty_rate_max=10.0, children_count=3)
        calc = calculate_duties(tariff, 10000)

        assert calc.duty_rate_used == 6.25
        assert calc.duty_amount == 625.0
        assert calc.is_range is True
        assert "Précisez le code complet" in calc.warnings[0]

    @pytest.mark.parametrize("policy,expected_duty", [("max", 1000.0), ("min", 250.0)])
    def test_range_policy(self, policy, expected_duty):
        from app.services.duty_calculator import calculate_duties

        tariff = _tariff("range", duty_rate=None, duty_rate_min=2.5, duty_rate_max=10.0)
        assert calculate_duties(tariff, 10000, range_policy=policy).duty_amount == expected_duty

    def test_inherited_rate_warns(self):
        from app.services.duty_calculator import calculate_duties

        calc = calculate_duties(_tariff("inherited", duty_rate=40.0, children_count=2), 1000)

        assert calc.duty_amount == 400.0
        assert "2 sous-position(s)" in calc.warnings[0]

    def test_missing_rate_computes_vat_only(self):
        from app.services.duty_calculator import calculate_duties

        calc = calculate_duties(_tariff("not_found", duty_rate=None), 10000)

        assert calc.duty_rate_used == 0.0
        assert calc.duty_amount == 0.0
        assert calc.vat_amount == 2000.0
        assert any("non trouvé" in w for w in calc.warnings)

    def test_prohibited_and_controls_warn(self):
        from app.rag.inheritance import TariffControl
        from app.services.duty_calculator import calculate_duties

        tariff = _tariff(is_prohibited=True, controls=[TariffControl(type="sanitaire", authority="ONSSA")])
        warnings = calculate_duties(tariff, 100).warnings

        assert any("INTERDIT" in w for w in warnings)
        assert "Contrôle requis: sanitaire (ONSSA)" in warnings

    def test_rounds_half_up_to_cents(self):
        from app.services.duty_calculator import calculate_duties

        calc = calculate_duties(_tariff(), 333.33)

        assert calc.duty_amount == 8.33
        assert calc.total_cost == round(calc.cif_value + calc.total_duties, 2)


class TestCustomsValue:

    def test_cif_is_unchanged(self):
        from app.services.duty_calculator import compute_caf
        assert compute_caf(1000, "CIF") == 1000.0

    def test_fob_adds_freight_and_default_insurance(self):
        """Insurance defaults to 0.5% of value + freight."""
        from app.services.duty_calculator import compute_caf
        assert compute_caf(1000, "FOB", freight=100) == 1105.5

    def test_cfr_adds_insurance_only(self):
        from app.services.duty_calculator import compute_caf
        assert compute_caf(1000, "cfr") == 1005.0

    def test_explicit_insurance(self):
        from app.services.duty_calculator import compute_caf
        assert compute_caf(1000, "EXW", freight=200, insurance=10) == 1210.0

    def test_convert_to_mad(self):
        from app.services.duty_calculator import convert_to_mad
        assert convert_to_mad(100, "EUR") == 1085.0
        assert convert_to_mad(100, "mad") == 100.0

    def test_unsupported_currency(self):
        from app.services.duty_calculator import convert_to_mad
        with pytest.raises(ValueError):
            convert_to_mad(100, "XYZ")
