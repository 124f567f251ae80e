"""Capacity ledger models: partners and their bookable time windows."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from washbook.common.db import Base, utcnow


class Partner(Base):
    __tablename__ = "partners"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String)
    service_type: Mapped[str] = mapped_column(String, index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class CapacitySlot(Base):
    """Units bookable for one partner in one window. Never deleted."""

    __tablename__ = "capacity_slots"
    __table_args__ = (
        UniqueConstraint("partner_id", "service_type", "slot_start", name="uq_capacity_slot"),
        CheckConstraint("reserved_units >= 0", name="ck_capacity_reserved_non_negative"),
        CheckConstraint("reserved_units <= max_units", name="ck_capacity_reserved_within_max"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    partner_id: Mapped[str] = mapped_column(ForeignKey("partners.id"), index=True)
    service_type: Mapped[str] = mapped_column(String)
    slot_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    slot_end: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    max_units: Mapped[int] = mapped_column(Integer, default=10)
    reserved_units: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
