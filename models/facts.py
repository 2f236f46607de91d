from sqlalchemy import Column, String, Integer, Float, Date, DateTime, Text, Index, UniqueConstraint
from datetime import datetime
from models.base import Base, generate_id


class FatoDesvioCarregamento(Base):
    """
    Load deviation fact: planned vs. loaded kg per wagon, pen and diet.

    Identity is (organization_id, natural_key); upsert is the only write path.
    """
    __tablename__ = "fato_desvio_carregamento"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(String(64), nullable=False)
    natural_key = Column(String(255), nullable=False)

    data_ref = Column(Date, nullable=False)
    turno = Column(String(32), nullable=True)

    # Dimension ids (may reference a pending dimension entry)
    equipamento_id = Column(String(36), nullable=True)
    curral_id = Column(String(36), nullable=True)
    dieta_id = Column(String(36), nullable=True)

    # Measures
    kg_planejado = Column(Float, nullable=True)
    kg_real = Column(Float, nullable=True)
    desvio_kg = Column(Float, nullable=True)
    desvio_pct = Column(Float, nullable=True)

    source_file_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "natural_key", name="uq_desvio_org_natural_key"),
        Index("idx_desvio_org_data", "organization_id", "data_ref"),
    )


class FatoTratoCurral(Base):
    """Feeding treatment fact: kg delivered per pen, time slot and operator."""
    __tablename__ = "fato_trato_curral"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(String(64), nullable=False)
    natural_key = Column(String(255), nullable=False)

    data_ref = Column(Date, nullable=False)
    hora_trato = Column(String(8), nullable=True)

    curral_id = Column(String(36), nullable=True)
    trateiro_id = Column(String(36), nullable=True)
    dieta_id = Column(String(36), nullable=True)

    quantidade_kg = Column(Float, nullable=True)
    quantidade_cabecas = Column(Integer, nullable=True)
    observacoes = Column(Text, nullable=True)

    source_file_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "natural_key", name="uq_trato_org_natural_key"),
        Index("idx_trato_org_data", "organization_id", "data_ref"),
    )
