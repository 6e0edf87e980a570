"""Device registry tables.

Owned by the external registry (admin CRUD lives elsewhere); the monitoring
core only reads them.
"""
import enum

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class ContactRole(str, enum.Enum):
    patient = "patient"
    caregiver = "caregiver"


class Device(TimestampMixin, Base):
    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # sensor MAC / vendor id
    patient_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(100), default="")
    location: Mapped[str] = mapped_column(String(100), default="")
    inactivity_threshold_seconds: Mapped[int] = mapped_column(default=30)
    escalation_delay_seconds: Mapped[int] = mapped_column(default=600)
    is_active: Mapped[bool] = mapped_column(default=True)

    def __repr__(self) -> str:
        return f"<Device {self.id} patient={self.patient_id} @ {self.location}>"


class CareContact(TimestampMixin, Base):
    __tablename__ = "care_contacts"

    __table_args__ = (
        Index("ix_care_contacts_address", "address"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(64), index=True)
    role: Mapped[ContactRole]
    display_name: Mapped[str] = mapped_column(String(100), default="")
    address: Mapped[str] = mapped_column(String(100))  # phone number in international format
    is_active: Mapped[bool] = mapped_column(default=True)

    def __repr__(self) -> str:
        return f"<CareContact {self.role.value} {self.display_name} patient={self.patient_id}>"
