from sqlalchemy import Column, String, DateTime, Boolean, UniqueConstraint
from datetime import datetime
from models.base import Base, generate_id


class DimensionMixin:
    """Columns shared by every dimension table"""
    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(String(64), nullable=False, index=True)
    code = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class DimCurral(DimensionMixin, Base):
    """Pens"""
    __tablename__ = "dim_curral"
    __table_args__ = (UniqueConstraint("organization_id", "code", name="uq_dim_curral_code"),)


class DimDieta(DimensionMixin, Base):
    """Diets"""
    __tablename__ = "dim_dieta"
    __table_args__ = (UniqueConstraint("organization_id", "code", name="uq_dim_dieta_code"),)


class DimEquipamento(DimensionMixin, Base):
    """Feed wagons / mixers"""
    __tablename__ = "dim_equipamento"
    __table_args__ = (UniqueConstraint("organization_id", "code", name="uq_dim_equipamento_code"),)


class DimTrateiro(DimensionMixin, Base):
    """Feeding operators"""
    __tablename__ = "dim_trateiro"
    __table_args__ = (UniqueConstraint("organization_id", "code", name="uq_dim_trateiro_code"),)
