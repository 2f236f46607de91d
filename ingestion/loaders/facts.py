"""
Fact record models, natural keys and business rules.

Each supported fact type is described by a FactDefinition: the table it
lands in, the pydantic model that validates a parsed row, which record
fields reference which dimension, and the columns compared on re-load.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, Field, validator

from core.exceptions import BusinessRuleError
from ingestion.storage.base import Tables
from models.base import DimensionType, FactType

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d")
HOUR_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(:[0-5]\d)?$")
VALID_TURNOS = ("MANHA", "TARDE", "NOITE", "MADRUGADA")

MISSING_PART = "NA"
TENANT_PREFIX_LENGTH = 8


# ============================================================================
# Natural keys
# ============================================================================

def tenant_prefix(organization_id: str) -> str:
    """First 8 alphanumerics of the uppercased organization id."""
    return re.sub(r"[^A-Z0-9]", "", str(organization_id).upper())[:TENANT_PREFIX_LENGTH]


def _key_part(value: Any) -> str:
    if value is None:
        return MISSING_PART
    text = re.sub(r"\s+", " ", str(value)).strip()
    return text.upper() if text else MISSING_PART


def build_natural_key(organization_id: str, data_ref: date, parts: List[Any]) -> str:
    """
    Deterministic tenant-scoped identity for a fact row.

        T1_2024-01-15_NA_BAHMAN_C001_NA

    Case and surrounding/repeated whitespace of the parts do not matter;
    a missing part is rendered as NA.
    """
    pieces = [tenant_prefix(organization_id), data_ref.isoformat()] + [_key_part(p) for p in parts]
    return "_".join(pieces)


# ============================================================================
# Field parsing helpers
# ============================================================================

def parse_date(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date) or value is None:
        return value
    text = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text[:10], fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date: {value!r}")


def _parse_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        if value != value:  # NaN from pandas
            return None
        return float(value)
    text = str(value).strip().replace(" ", "")
    if not text:
        return None
    # Brazilian formatting: 1.234,56
    if "," in text:
        text = text.replace(".", "").replace(",", ".")
    try:
        return float(text)
    except ValueError:
        raise ValueError(f"Invalid number: {value!r}")


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and value != value:
        return None
    text = re.sub(r"\s+", " ", str(value)).strip()
    return text or None


# ============================================================================
# Record models
# ============================================================================

class DesvioCarregamentoRecord(BaseModel):
    """
    One wagon load: planned vs. real kg for a pen and diet.

    desvio_kg / desvio_pct are derived from the kg columns when the file
    does not carry them.
    """
    data_ref: date
    turno: Optional[str] = None
    equipamento: Optional[str] = None
    curral_codigo: str = Field(..., min_length=1)
    dieta_nome: Optional[str] = None
    kg_planejado: Optional[float] = Field(None, ge=0)
    kg_real: Optional[float] = Field(None, ge=0)
    desvio_kg: Optional[float] = None
    desvio_pct: Optional[float] = None

    @validator("data_ref", pre=True)
    def parse_data_ref(cls, v):
        return parse_date(v)

    @validator("turno", "equipamento", "curral_codigo", "dieta_nome", pre=True)
    def clean_codes(cls, v):
        return _clean_text(v)

    @validator("turno")
    def normalize_turno(cls, v):
        return v.upper() if v else v

    @validator("kg_planejado", "kg_real", pre=True)
    def parse_kg(cls, v):
        return _parse_number(v)

    @validator("desvio_kg", pre=True, always=True)
    def derive_desvio_kg(cls, v, values):
        v = _parse_number(v)
        if v is None and values.get("kg_real") is not None and values.get("kg_planejado") is not None:
            v = round(values["kg_real"] - values["kg_planejado"], 3)
        return v

    @validator("desvio_pct", pre=True, always=True)
    def derive_desvio_pct(cls, v, values):
        v = _parse_number(v)
        planned = values.get("kg_planejado")
        if v is None and values.get("desvio_kg") is not None and planned:
            v = round(values["desvio_kg"] / planned * 100, 2)
        return v


class TratoCurralRecord(BaseModel):
    """One feeding treatment delivered to a pen."""
    data_ref: date
    hora_trato: Optional[str] = None
    curral_codigo: str = Field(..., min_length=1)
    trateiro: Optional[str] = None
    dieta_nome: Optional[str] = None
    quantidade_kg: float = Field(..., ge=0)
    quantidade_cabecas: Optional[int] = Field(None, ge=0)
    observacoes: Optional[str] = None

    @validator("data_ref", pre=True)
    def parse_data_ref(cls, v):
        return parse_date(v)

    @validator("curral_codigo", "trateiro", "dieta_nome", "observacoes", pre=True)
    def clean_codes(cls, v):
        return _clean_text(v)

    @validator("hora_trato", pre=True)
    def parse_hora(cls, v):
        v = _clean_text(v)
        if v is None:
            return None
        match = HOUR_PATTERN.match(v)
        if not match:
            raise ValueError(f"Invalid time (HH:MM): {v!r}")
        return f"{int(match.group(1)):02d}:{match.group(2)}"

    @validator("quantidade_kg", pre=True)
    def parse_quantidade(cls, v):
        return _parse_number(v)

    @validator("quantidade_cabecas", pre=True)
    def parse_cabecas(cls, v):
        number = _parse_number(v)
        if number is None:
            return None
        if number != int(number):
            raise ValueError(f"Head count must be a whole number: {v!r}")
        return int(number)


# ============================================================================
# Business rules
# ============================================================================

def _check_data_ref(record: Any, today: date) -> List[str]:
    errors = []
    if record.data_ref > today:
        errors.append(f"data_ref {record.data_ref} is in the future")
    elif record.data_ref < today - timedelta(days=365):
        errors.append(f"data_ref {record.data_ref} is more than one year old")
    return errors


def desvio_rules(record: DesvioCarregamentoRecord, today: date) -> List[str]:
    errors = _check_data_ref(record, today)
    if record.kg_planejado is None and record.kg_real is None:
        errors.append("kg_planejado and kg_real are both empty")
    if record.turno and record.turno not in VALID_TURNOS:
        errors.append(f"turno must be one of {', '.join(VALID_TURNOS)}")
    if record.desvio_pct is not None and abs(record.desvio_pct) > 100:
        errors.append(f"desvio_pct {record.desvio_pct} is outside -100..100")
    return errors


def trato_rules(record: TratoCurralRecord, today: date) -> List[str]:
    errors = _check_data_ref(record, today)
    if record.quantidade_kg > 5000:
        errors.append(f"quantidade_kg {record.quantidade_kg} is too high for a single treatment")
    return errors


# ============================================================================
# Fact definitions
# ============================================================================

@dataclass(frozen=True)
class DimensionReference:
    record_field: str
    dimension: DimensionType
    id_column: str


@dataclass(frozen=True)
class FactDefinition:
    """How a fact type maps onto its table"""
    fact_type: FactType
    table: str
    record_model: Type[BaseModel]
    key_fields: Tuple[str, ...]
    dimensions: Tuple[DimensionReference, ...]
    measure_columns: Tuple[str, ...]
    attribute_columns: Tuple[str, ...] = ()
    rules: Optional[Callable[[Any, date], List[str]]] = None
    required_columns: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def compare_columns(self) -> Tuple[str, ...]:
        """Columns whose change turns a re-load into an update."""
        return (
            self.measure_columns
            + self.attribute_columns
            + tuple(d.id_column for d in self.dimensions)
        )

    def natural_key(self, record: BaseModel, organization_id: str) -> str:
        return build_natural_key(
            organization_id,
            record.data_ref,
            [getattr(record, name) for name in self.key_fields]
        )

    def validate_business_rules(self, record: BaseModel, today: Optional[date] = None) -> None:
        """
        Raises:
            BusinessRuleError: One or more rules failed
        """
        if self.rules is None:
            return
        errors = self.rules(record, today or datetime.utcnow().date())
        if errors:
            raise BusinessRuleError(
                "; ".join(errors),
                context={"fact_type": self.fact_type.value, "rule_errors": errors}
            )


FACT_DEFINITIONS: Dict[FactType, FactDefinition] = {
    FactType.DESVIO_CARREGAMENTO: FactDefinition(
        fact_type=FactType.DESVIO_CARREGAMENTO,
        table=Tables.FATO_DESVIO,
        record_model=DesvioCarregamentoRecord,
        key_fields=("turno", "equipamento", "curral_codigo", "dieta_nome"),
        dimensions=(
            DimensionReference("equipamento", DimensionType.EQUIPAMENTO, "equipamento_id"),
            DimensionReference("curral_codigo", DimensionType.CURRAL, "curral_id"),
            DimensionReference("dieta_nome", DimensionType.DIETA, "dieta_id"),
        ),
        measure_columns=("kg_planejado", "kg_real", "desvio_kg", "desvio_pct"),
        attribute_columns=("turno",),
        rules=desvio_rules,
        required_columns=("data_ref", "curral_codigo"),
    ),
    FactType.TRATO_CURRAL: FactDefinition(
        fact_type=FactType.TRATO_CURRAL,
        table=Tables.FATO_TRATO,
        record_model=TratoCurralRecord,
        key_fields=("hora_trato", "curral_codigo", "trateiro"),
        dimensions=(
            DimensionReference("curral_codigo", DimensionType.CURRAL, "curral_id"),
            DimensionReference("trateiro", DimensionType.TRATEIRO, "trateiro_id"),
            DimensionReference("dieta_nome", DimensionType.DIETA, "dieta_id"),
        ),
        measure_columns=("quantidade_kg", "quantidade_cabecas"),
        attribute_columns=("hora_trato", "observacoes"),
        rules=trato_rules,
        required_columns=("data_ref", "curral_codigo", "quantidade_kg"),
    ),
}


def get_fact_definition(fact_type: Any) -> FactDefinition:
    try:
        return FACT_DEFINITIONS[FactType(fact_type)]
    except ValueError:
        raise ValueError(f"Unsupported fact type: {fact_type}")
