"""
ORM models for users, patients and the prescription aggregate.
"""

import json
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, Numeric,
    String, Text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.types import TypeDecorator

from optica.config import DEFAULT_ROLE

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_revocation_marker() -> str:
    return str(uuid.uuid4())


def _num(value) -> Optional[float]:
    return float(value) if value is not None else None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ── Coatings storage ─────────────────────────────────────────────────

def normalize_coatings(value) -> List[str]:
    """Coerce any stored or submitted coatings value to a list of strings.

    Accepts a list, a JSON array string, a JSON string scalar, or a legacy
    comma-delimited string.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(c).strip() for c in value if c is not None and str(c).strip()]
    text_value = str(value).strip()
    if not text_value:
        return []
    try:
        parsed = json.loads(text_value)
    except ValueError:
        return [c.strip() for c in text_value.split(",") if c.strip()]
    if isinstance(parsed, list):
        return normalize_coatings(parsed)
    return [str(parsed).strip()] if str(parsed).strip() else []


class CoatingsList(TypeDecorator):
    """Stored as a JSON array in a TEXT column; read back as a list."""
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        coatings = normalize_coatings(value)
        return json.dumps(coatings) if coatings else None

    def process_result_value(self, value, dialect):
        return normalize_coatings(value)


class TimestampMixin:
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# ── Identity ─────────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(10), nullable=False, default=DEFAULT_ROLE, index=True)
    jti = Column(String(36), nullable=False, unique=True, default=new_revocation_marker)

    patients = relationship(
        "Patient", back_populates="user", cascade="all, delete-orphan",
    )
    prescriptions = relationship(
        "Prescription", back_populates="user", cascade="all, delete-orphan",
    )

    def is_admin(self) -> bool:
        return self.role == "admin"

    def is_sales(self) -> bool:
        return self.role == "sales"

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} role={self.role}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "created_at": _iso(self.created_at),
        }


# ── Patients ─────────────────────────────────────────────────────────

class Patient(TimestampMixin, Base):
    __tablename__ = "patients"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    dni = Column(String(8), unique=True, nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(15), nullable=True)
    address = Column(Text, nullable=True)
    city = Column(String(100), nullable=True)
    state = Column(String(100), nullable=True)
    zip_code = Column(String(20), nullable=True)
    birth_date = Column(Date, nullable=True)
    emergency_contact = Column(String(100), nullable=True)
    emergency_phone = Column(String(20), nullable=True)
    insurance_provider = Column(String(100), nullable=True)
    insurance_number = Column(String(50), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    notes = Column(Text, nullable=True)

    user = relationship("User", back_populates="patients")
    prescriptions = relationship(
        "Prescription", back_populates="patient", cascade="all, delete-orphan",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def age(self, today: Optional[date] = None) -> Optional[int]:
        if not self.birth_date:
            return None
        today = today or date.today()
        years = today.year - self.birth_date.year
        if (today.month, today.day) < (self.birth_date.month, self.birth_date.day):
            years -= 1
        return years

    @property
    def formatted_phone(self) -> Optional[str]:
        if not self.phone or len(self.phone) != 10:
            return self.phone
        return f"({self.phone[0:3]}) {self.phone[3:6]}-{self.phone[6:10]}"

    @property
    def status_text(self) -> str:
        return "Active" if self.active else "Inactive"

    def __repr__(self) -> str:
        return f"<Patient id={self.id} name={self.full_name!r}>"

    def to_dict(self, include_user: bool = True) -> dict:
        data = {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "full_name": self.full_name,
            "dni": self.dni,
            "email": self.email,
            "phone": self.phone,
            "formatted_phone": self.formatted_phone,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "zip_code": self.zip_code,
            "birth_date": _iso(self.birth_date),
            "age": self.age(),
            "emergency_contact": self.emergency_contact,
            "emergency_phone": self.emergency_phone,
            "insurance_provider": self.insurance_provider,
            "insurance_number": self.insurance_number,
            "active": self.active,
            "notes": self.notes,
            "user_id": self.user_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_user:
            data["user"] = self.user.to_dict() if self.user else None
        return data


# ── Prescription aggregate ───────────────────────────────────────────

class Prescription(TimestampMixin, Base):
    __tablename__ = "prescriptions"
    __table_args__ = (
        Index("ix_prescriptions_patient_created", "patient_id", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    exam_date = Column(Date, nullable=True)
    observations = Column(Text, nullable=True)
    order_number = Column(String(50), unique=True, nullable=True)
    total_cost = Column(Numeric(8, 2), nullable=True)
    deposit_paid = Column(Numeric(8, 2), nullable=True)
    expected_delivery_date = Column(Date, nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    distance_va_od = Column(Numeric(5, 2), nullable=True)
    distance_va_os = Column(Numeric(5, 2), nullable=True)
    near_va_od = Column(Numeric(5, 2), nullable=True)
    near_va_os = Column(Numeric(5, 2), nullable=True)

    patient = relationship("Patient", back_populates="prescriptions")
    user = relationship("User", back_populates="prescriptions")
    prescription_eyes = relationship(
        "PrescriptionEye", back_populates="prescription",
        cascade="all, delete-orphan", order_by="PrescriptionEye.id",
    )
    lenses = relationship(
        "Lens", back_populates="prescription",
        cascade="all, delete-orphan", order_by="Lens.id",
    )
    frame = relationship(
        "Frame", back_populates="prescription", uselist=False,
        cascade="all, delete-orphan",
    )

    @property
    def total_balance(self) -> Decimal:
        return Decimal(self.total_cost or 0) - Decimal(self.deposit_paid or 0)

    @property
    def fully_paid(self) -> bool:
        if self.total_cost is None or self.deposit_paid is None:
            return False
        return self.deposit_paid >= self.total_cost

    def is_overdue(self, today: Optional[date] = None) -> bool:
        if not self.expected_delivery_date:
            return False
        today = today or date.today()
        return self.expected_delivery_date < today and self.status != "delivered"

    @property
    def od_eye(self):
        return next((e for e in self.prescription_eyes if e.eye_type == "OD"), None)

    @property
    def os_eye(self):
        return next((e for e in self.prescription_eyes if e.eye_type == "OS"), None)

    def __repr__(self) -> str:
        return f"<Prescription id={self.id} patient_id={self.patient_id} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "exam_date": _iso(self.exam_date),
            "observations": self.observations,
            "order_number": self.order_number,
            "total_cost": _num(self.total_cost),
            "deposit_paid": _num(self.deposit_paid),
            "balance_due": _num(self.total_balance),
            "fully_paid": self.fully_paid,
            "is_overdue": self.is_overdue(),
            "expected_delivery_date": _iso(self.expected_delivery_date),
            "status": self.status,
            "distance_va_od": _num(self.distance_va_od),
            "distance_va_os": _num(self.distance_va_os),
            "near_va_od": _num(self.near_va_od),
            "near_va_os": _num(self.near_va_os),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "prescription_eyes": [eye.to_dict() for eye in self.prescription_eyes],
            "lenses": [lens.to_dict() for lens in self.lenses],
            "frame": self.frame.to_dict() if self.frame else None,
            "patient_id": self.patient_id,
            "patient": self.patient.to_dict(include_user=False) if self.patient else None,
            "user_id": self.user_id,
        }


class PrescriptionEye(TimestampMixin, Base):
    __tablename__ = "prescription_eyes"
    __table_args__ = (
        Index("ix_prescription_eyes_prescription_eye", "prescription_id", "eye_type"),
    )

    id = Column(Integer, primary_key=True)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    eye_type = Column(String(2), nullable=False)
    sphere = Column(Numeric(5, 2), nullable=True)
    cylinder = Column(Numeric(5, 2), nullable=True)
    axis = Column(Integer, nullable=True)
    add = Column(Numeric(5, 2), nullable=True)
    prism = Column(Numeric(5, 2), nullable=True)
    prism_base = Column(String(20), nullable=True)
    dnp = Column(Numeric(5, 1), nullable=True)
    npd = Column(Numeric(5, 1), nullable=True)
    height = Column(Numeric(5, 1), nullable=True)
    notes = Column(Text, nullable=True)

    prescription = relationship("Prescription", back_populates="prescription_eyes")

    @property
    def eye_label(self) -> str:
        return "Right Eye" if self.eye_type == "OD" else "Left Eye"

    @property
    def prescription_display(self) -> str:
        parts = []
        if self.sphere is not None:
            parts.append(f"{self.sphere:+.2f}")
        if self.cylinder is not None:
            parts.append(f"{self.cylinder:+.2f}")
        if self.axis is not None:
            parts.append(f"{self.axis}°")
        if self.add is not None:
            parts.append(f"Add {self.add}")
        return " ".join(parts)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "eye_type": self.eye_type,
            "sphere": _num(self.sphere),
            "cylinder": _num(self.cylinder),
            "axis": self.axis,
            "add": _num(self.add),
            "prism": _num(self.prism),
            "prism_base": self.prism_base,
            "dnp": _num(self.dnp),
            "npd": _num(self.npd),
            "height": _num(self.height),
            "notes": self.notes,
        }


class Lens(TimestampMixin, Base):
    __tablename__ = "lenses"
    __table_args__ = (
        Index("ix_lenses_prescription_eye", "prescription_id", "eye_type"),
    )

    id = Column(Integer, primary_key=True)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    eye_type = Column(String(4), nullable=True)
    lens_type = Column(String(100), nullable=True)
    material = Column(String(100), nullable=True)
    coatings = Column(CoatingsList, nullable=True)
    refractive_index = Column("index", Numeric(3, 2), nullable=True)
    tint = Column(String(50), nullable=True)
    photochromic = Column(Boolean, nullable=True)
    progressive = Column(Boolean, nullable=True)
    special_properties = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    prescription = relationship("Prescription", back_populates="lenses")

    @property
    def coatings_list(self) -> List[str]:
        return normalize_coatings(self.coatings)

    def has_uv_protection(self) -> bool:
        return any("uv" in c.lower() for c in self.coatings_list)

    def has_blue_light_filter(self) -> bool:
        return any("blue" in c.lower() for c in self.coatings_list)

    @property
    def lens_description(self) -> str:
        parts = []
        if self.lens_type:
            parts.append(self.lens_type)
        if self.material:
            parts.append(f"({self.material})")
        if self.refractive_index is not None:
            parts.append(f"Index {self.refractive_index}")
        if self.tint and self.tint != "None":
            parts.append(self.tint)
        if self.photochromic:
            parts.append("Photochromic")
        return " ".join(parts)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "eye_type": self.eye_type,
            "lens_type": self.lens_type,
            "material": self.material,
            "coatings": self.coatings_list,
            "index": _num(self.refractive_index),
            "tint": self.tint,
            "photochromic": self.photochromic,
            "progressive": self.progressive,
            "special_properties": self.special_properties,
            "notes": self.notes,
        }


class Frame(TimestampMixin, Base):
    __tablename__ = "frames"

    id = Column(Integer, primary_key=True)
    prescription_id = Column(
        Integer, ForeignKey("prescriptions.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    brand = Column(String(100), nullable=True)
    model = Column(String(100), nullable=True)
    material = Column(String(100), nullable=True)
    color = Column(String(50), nullable=True)
    style = Column(String(50), nullable=True)
    frame_width = Column(Numeric(5, 1), nullable=True)
    lens_width = Column(Numeric(5, 1), nullable=True)
    bridge_size = Column(Numeric(5, 1), nullable=True)
    temple_length = Column(Numeric(5, 1), nullable=True)
    frame_cost = Column(Numeric(8, 2), nullable=True)
    special_features = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    prescription = relationship("Prescription", back_populates="frame")

    @property
    def frame_description(self) -> str:
        return " - ".join(p for p in (self.brand, self.model, self.style, self.color) if p)

    @property
    def dimensions_display(self) -> str:
        sizes = (self.lens_width, self.bridge_size, self.temple_length)
        return ", ".join(f"{s}mm" for s in sizes if s is not None)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "brand": self.brand,
            "model": self.model,
            "material": self.material,
            "color": self.color,
            "style": self.style,
            "frame_width": _num(self.frame_width),
            "lens_width": _num(self.lens_width),
            "bridge_size": _num(self.bridge_size),
            "temple_length": _num(self.temple_length),
            "frame_cost": _num(self.frame_cost),
            "special_features": self.special_features,
            "notes": self.notes,
        }
