"""
Unit tests for fact record models, natural keys and business rules
"""

from datetime import date, timedelta

import pytest
from pydantic import ValidationError

from core.exceptions import BusinessRuleError
from ingestion.loaders.facts import (
    DesvioCarregamentoRecord,
    TratoCurralRecord,
    build_natural_key,
    get_fact_definition,
    tenant_prefix,
)
from models.base import FactType

TODAY = date(2024, 3, 1)


class TestNaturalKey:
    """Test deterministic keys"""

    def test_desvio_key_format(self):
        definition = get_fact_definition(FactType.DESVIO_CARREGAMENTO)
        record = DesvioCarregamentoRecord(
            data_ref="2024-01-15", equipamento="Bahman", curral_codigo="C001", kg_real=980, kg_planejado=1000
        )

        assert definition.natural_key(record, "T1") == "T1_2024-01-15_NA_BAHMAN_C001_NA"

    def test_tenant_prefix(self):
        assert tenant_prefix("fazenda-boa-vista-01") == "FAZENDAB"
        assert tenant_prefix("t1") == "T1"

    def test_whitespace_and_case_collapse(self):
        day = date(2024, 1, 15)
        assert build_natural_key("T1", day, ["  manha ", "bah  man", None]) == \
            build_natural_key("t1", day, ["MANHA", "BAH MAN", ""])

    def test_trato_key_uses_time_slot(self):
        definition = get_fact_definition("trato_curral")
        record = TratoCurralRecord(
            data_ref="15/01/2024", hora_trato="7:05", curral_codigo="c001", trateiro="Joao", quantidade_kg="1.200,5"
        )

        assert definition.natural_key(record, "T1") == "T1_2024-01-15_07:05_C001_JOAO"


class TestRecordModels:
    """Test field parsing"""

    def test_desvio_derives_deviation(self):
        record = DesvioCarregamentoRecord(data_ref="2024-01-15", curral_codigo="C001", kg_planejado="1000", kg_real="950")

        assert record.desvio_kg == -50
        assert record.desvio_pct == -5.0

    def test_desvio_keeps_explicit_deviation(self):
        record = DesvioCarregamentoRecord(
            data_ref="2024-01-15", curral_codigo="C001", kg_planejado=1000, kg_real=950, desvio_kg=-49
        )
        assert record.desvio_kg == -49

    def test_brazilian_number_format(self):
        record = TratoCurralRecord(data_ref="2024-01-15", curral_codigo="C001", quantidade_kg="1.234,5")
        assert record.quantidade_kg == 1234.5

    def test_date_formats(self):
        for value in ("2024-01-15", "15/01/2024", "15-01-2024", "2024/01/15"):
            assert DesvioCarregamentoRecord(data_ref=value, curral_codigo="C1").data_ref == date(2024, 1, 15)

    @pytest.mark.parametrize("field, value", [
        ("data_ref", "yesterday"),
        ("curral_codigo", "   "),
        ("kg_real", "-10"),
        ("kg_real", "lots"),
    ])
    def test_invalid_desvio_fields(self, field, value):
        data = {"data_ref": "2024-01-15", "curral_codigo": "C001", "kg_real": "10"}
        data[field] = value
        with pytest.raises(ValidationError):
            DesvioCarregamentoRecord(**data)

    def test_invalid_hour(self):
        with pytest.raises(ValidationError):
            TratoCurralRecord(data_ref="2024-01-15", curral_codigo="C001", quantidade_kg=10, hora_trato="25:00")

    def test_fractional_head_count(self):
        with pytest.raises(ValidationError):
            TratoCurralRecord(data_ref="2024-01-15", curral_codigo="C001", quantidade_kg=10, quantidade_cabecas="10,5")


class TestBusinessRules:
    """Test rules applied after field validation"""

    def _desvio(self, **overrides):
        data = {"data_ref": TODAY - timedelta(days=1), "curral_codigo": "C001", "kg_planejado": 1000, "kg_real": 990}
        data.update(overrides)
        return DesvioCarregamentoRecord(**data)

    def test_valid_record_passes(self):
        get_fact_definition(FactType.DESVIO_CARREGAMENTO).validate_business_rules(self._desvio(), TODAY)

    @pytest.mark.parametrize("overrides, fragment", [
        ({"data_ref": TODAY + timedelta(days=1)}, "in the future"),
        ({"data_ref": TODAY - timedelta(days=400)}, "more than one year old"),
        ({"turno": "ALMOCO"}, "turno must be one of"),
        ({"kg_planejado": None, "kg_real": None}, "both empty"),
        ({"kg_planejado": 100, "kg_real": 500}, "outside -100..100"),
    ])
    def test_desvio_rule_failures(self, overrides, fragment):
        definition = get_fact_definition(FactType.DESVIO_CARREGAMENTO)
        with pytest.raises(BusinessRuleError) as exc_info:
            definition.validate_business_rules(self._desvio(**overrides), TODAY)
        assert fragment in exc_info.value.message

    def test_trato_quantity_limit(self):
        definition = get_fact_definition(FactType.TRATO_CURRAL)
        record = TratoCurralRecord(data_ref=TODAY, curral_codigo="C001", quantidade_kg=6000)
        with pytest.raises(BusinessRuleError) as exc_info:
            definition.validate_business_rules(record, TODAY)
        assert exc_info.value.context["rule_errors"] == [
            "quantidade_kg 6000.0 is too high for a single treatment"
        ]

    def test_unknown_fact_type(self):
        with pytest.raises(ValueError):
            get_fact_definition("silagem")
