from __future__ import annotations

import enum
import uuid
import datetime as dt
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clinica.db import Base


def new_uuid() -> str:
    return str(uuid.uuid4())


class AppointmentStatus(enum.Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class ParticipantStatus(enum.Enum):
    REGISTERED = "registered"
    ATTENDED = "attended"
    NO_SHOW = "no_show"
    CANCELLED = "cancelled"


class GroupActivityStatus(enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TimePreference(enum.Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    ANY = "any"


class VacationStatus(enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class InvoiceType(enum.Enum):
    NORMAL = "normal"
    RECTIFICATIVA = "rectificativa"
    SIMPLIFICADA = "simplificada"


class InvoiceStatus(enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    CANCELLED = "cancelled"


# =========================
# Organizzazione e personale
# =========================
class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    tax_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    address: Mapped[str | None] = mapped_column(String(200), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    city: Mapped[str | None] = mapped_column(String(80), nullable=True)
    province: Mapped[str | None] = mapped_column(String(80), nullable=True)
    country: Mapped[str | None] = mapped_column(String(80), nullable=True, default="España")
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)

    invoice_prefix: Mapped[str] = mapped_column(String(20), nullable=False, default="FAC")
    # ultimo numero di fattura emesso (letto e poi incrementato alla creazione)
    last_invoice_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    users: Mapped[list["User"]] = relationship(back_populates="organization")

    def __repr__(self) -> str:
        return f"Organization({self.name})"


class User(Base):
    """
    Utente dell'organizzazione (professionista o staff).
    - username univoco, password_hash con bcrypt (passlib)
    - type == 1: professionista sanitario (compare in agenda)
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    username: Mapped[str | None] = mapped_column(String(50), unique=True, nullable=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    type: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    color: Mapped[str | None] = mapped_column(String(20), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, nullable=False)

    organization: Mapped["Organization"] = relationship(back_populates="users")
    work_schedules: Mapped[list["WorkSchedule"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    vacation_requests: Mapped[list["VacationRequest"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"User({self.name})"


class Service(Base):
    __tablename__ = "services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("50.00"))
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("21"))
    irpf_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    retention_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    color: Mapped[str] = mapped_column(String(20), nullable=False, default="#3B82F6")
    category: Mapped[str | None] = mapped_column(String(80), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class UserService(Base):
    __tablename__ = "user_services"
    __table_args__ = (UniqueConstraint("user_id", "service_id", name="uq_user_service"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), nullable=False)


class Consultation(Base):
    """Sala / studio in cui si svolge la visita."""
    __tablename__ = "consultations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# =========================
# Orari di lavoro e ferie
# =========================
class WorkSchedule(Base):
    __tablename__ = "work_schedules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)  # 0=domenica ... 6=sabato
    start_time: Mapped[str] = mapped_column(String(8), nullable=False)
    end_time: Mapped[str] = mapped_column(String(8), nullable=False)
    buffer_time_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    user: Mapped["User"] = relationship(back_populates="work_schedules")
    breaks: Mapped[list["WorkScheduleBreak"]] = relationship(
        back_populates="work_schedule",
        cascade="all, delete-orphan",
        order_by="WorkScheduleBreak.sort_order",
    )


class WorkScheduleBreak(Base):
    __tablename__ = "work_schedule_breaks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    work_schedule_id: Mapped[int] = mapped_column(ForeignKey("work_schedules.id"), nullable=False)
    break_name: Mapped[str] = mapped_column(String(80), nullable=False, default="Pausa")
    start_time: Mapped[str] = mapped_column(String(8), nullable=False)
    end_time: Mapped[str] = mapped_column(String(8), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    work_schedule: Mapped["WorkSchedule"] = relationship(back_populates="breaks")


class VacationRequest(Base):
    __tablename__ = "vacation_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(30), nullable=False, default="vacation")
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    status: Mapped[VacationStatus] = mapped_column(
        Enum(VacationStatus), default=VacationStatus.PENDING, nullable=False
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    user: Mapped["User"] = relationship(back_populates="vacation_requests")


# =========================
# Clienti e appuntamenti
# =========================
class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True)

    # dati di fatturazione
    tax_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    address: Mapped[str | None] = mapped_column(String(200), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    city: Mapped[str | None] = mapped_column(String(80), nullable=True)
    province: Mapped[str | None] = mapped_column(String(80), nullable=True)

    birth_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, nullable=False)

    appointments: Mapped[list["Appointment"]] = relationship(back_populates="client")

    def __repr__(self) -> str:
        return f"Client({self.name})"


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False)
    professional_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    consultation_id: Mapped[int | None] = mapped_column(ForeignKey("consultations.id"), nullable=True)
    service_id: Mapped[int | None] = mapped_column(ForeignKey("services.id"), nullable=True)

    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[str] = mapped_column(String(8), nullable=False)
    end_time: Mapped[str] = mapped_column(String(8), nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    # transizioni libere: qualsiasi stato è impostabile dalla modifica
    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus), default=AppointmentStatus.CONFIRMED, nullable=False
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    diagnosis: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, nullable=False)

    client: Mapped["Client"] = relationship(back_populates="appointments")
    professional: Mapped["User"] = relationship()
    consultation: Mapped["Consultation"] = relationship()
    service: Mapped["Service"] = relationship()


# =========================
# Storia clinica e follow-up
# =========================
class MedicalHistory(Base):
    """Cartella anamnestica: un record piatto per cliente (upsert unico)."""
    __tablename__ = "medical_histories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, unique=True)
    professional_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, nullable=False)

    # 1. motivo della consulta
    chief_complaint: Mapped[str | None] = mapped_column(Text, nullable=True)
    complaint_duration: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 2. malattia attuale
    detailed_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    onset: Mapped[str | None] = mapped_column(Text, nullable=True)
    aggravating_factors: Mapped[str | None] = mapped_column(Text, nullable=True)
    relieving_factors: Mapped[str | None] = mapped_column(Text, nullable=True)
    symptom_intensity: Mapped[str | None] = mapped_column(Text, nullable=True)
    symptom_frequency: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    daily_life_impact: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 3. anamnesi personale
    chronic_diseases: Mapped[str | None] = mapped_column(Text, nullable=True)
    acute_diseases: Mapped[str | None] = mapped_column(Text, nullable=True)
    previous_surgeries: Mapped[str | None] = mapped_column(Text, nullable=True)
    drug_allergies: Mapped[str | None] = mapped_column(Text, nullable=True)
    food_allergies: Mapped[str | None] = mapped_column(Text, nullable=True)
    environmental_allergies: Mapped[str | None] = mapped_column(Text, nullable=True)
    usual_medication: Mapped[str | None] = mapped_column(Text, nullable=True)
    previous_hospitalizations: Mapped[str | None] = mapped_column(Text, nullable=True)
    accidents_injuries: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 4. anamnesi familiare
    hereditary_diseases: Mapped[str | None] = mapped_column(Text, nullable=True)
    parents_conditions: Mapped[str | None] = mapped_column(Text, nullable=True)
    siblings_conditions: Mapped[str | None] = mapped_column(Text, nullable=True)
    grandparents_conditions: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 5. abitudini e stile di vita
    diet: Mapped[str | None] = mapped_column(Text, nullable=True)
    physical_activity: Mapped[str | None] = mapped_column(Text, nullable=True)
    smoker: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tobacco_amount: Mapped[str | None] = mapped_column(Text, nullable=True)
    tobacco_duration: Mapped[str | None] = mapped_column(Text, nullable=True)
    alcohol: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    alcohol_amount: Mapped[str | None] = mapped_column(Text, nullable=True)
    alcohol_frequency: Mapped[str | None] = mapped_column(Text, nullable=True)
    other_substances: Mapped[str | None] = mapped_column(Text, nullable=True)
    sleep_quality: Mapped[str | None] = mapped_column(Text, nullable=True)
    sleep_hours: Mapped[str | None] = mapped_column(Text, nullable=True)
    stress_level: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 6. funzione digestiva
    appetite: Mapped[str | None] = mapped_column(Text, nullable=True)
    digestion: Mapped[str | None] = mapped_column(Text, nullable=True)
    bowel_movements: Mapped[str | None] = mapped_column(Text, nullable=True)
    bowel_frequency: Mapped[str | None] = mapped_column(Text, nullable=True)
    stool_consistency: Mapped[str | None] = mapped_column(Text, nullable=True)
    bowel_changes: Mapped[str | None] = mapped_column(Text, nullable=True)
    nausea_vomiting: Mapped[str | None] = mapped_column(Text, nullable=True)
    reflux: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 7. funzione urinaria
    urinary_frequency: Mapped[str | None] = mapped_column(Text, nullable=True)
    dysuria: Mapped[str | None] = mapped_column(Text, nullable=True)
    incontinence: Mapped[str | None] = mapped_column(Text, nullable=True)
    urine_color_changes: Mapped[str | None] = mapped_column(Text, nullable=True)
    urine_odor_changes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 8. cardiovascolare e respiratoria
    palpitations: Mapped[str | None] = mapped_column(Text, nullable=True)
    dyspnea: Mapped[str | None] = mapped_column(Text, nullable=True)
    chest_pain: Mapped[str | None] = mapped_column(Text, nullable=True)
    cough: Mapped[str | None] = mapped_column(Text, nullable=True)
    sputum: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 9. muscoloscheletrica
    joint_pain: Mapped[str | None] = mapped_column(Text, nullable=True)
    muscle_pain: Mapped[str | None] = mapped_column(Text, nullable=True)
    movement_limitations: Mapped[str | None] = mapped_column(Text, nullable=True)
    weakness_fatigue: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 10. neurologica
    dizziness_vertigo: Mapped[str | None] = mapped_column(Text, nullable=True)
    sensory_loss: Mapped[str | None] = mapped_column(Text, nullable=True)
    strength_loss: Mapped[str | None] = mapped_column(Text, nullable=True)
    headaches: Mapped[str | None] = mapped_column(Text, nullable=True)
    visual_disturbances: Mapped[str | None] = mapped_column(Text, nullable=True)
    hearing_disturbances: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 11. psicologica / emotiva
    mood: Mapped[str | None] = mapped_column(Text, nullable=True)
    anxiety: Mapped[str | None] = mapped_column(Text, nullable=True)
    depression: Mapped[str | None] = mapped_column(Text, nullable=True)
    behavior_changes: Mapped[str | None] = mapped_column(Text, nullable=True)
    sleep_disorders: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 12. revisione per sistemi
    skin_system: Mapped[str | None] = mapped_column(Text, nullable=True)
    endocrine_system: Mapped[str | None] = mapped_column(Text, nullable=True)
    hematologic_system: Mapped[str | None] = mapped_column(Text, nullable=True)

    # esame obiettivo
    blood_pressure: Mapped[str | None] = mapped_column(Text, nullable=True)
    heart_rate: Mapped[str | None] = mapped_column(Text, nullable=True)
    respiratory_rate: Mapped[str | None] = mapped_column(Text, nullable=True)
    temperature: Mapped[str | None] = mapped_column(Text, nullable=True)
    oxygen_saturation: Mapped[str | None] = mapped_column(Text, nullable=True)
    weight: Mapped[str | None] = mapped_column(Text, nullable=True)   # kg
    height: Mapped[str | None] = mapped_column(Text, nullable=True)   # cm
    imc: Mapped[str | None] = mapped_column(Text, nullable=True)      # derivato da peso/altezza
    clinical_observations: Mapped[str | None] = mapped_column(Text, nullable=True)

    # esami complementari
    complementary_tests: Mapped[str | None] = mapped_column(Text, nullable=True)

    # diagnosi e trattamento
    diagnosis: Mapped[str | None] = mapped_column(Text, nullable=True)
    medication: Mapped[str | None] = mapped_column(Text, nullable=True)
    recommendations: Mapped[str | None] = mapped_column(Text, nullable=True)
    referrals: Mapped[str | None] = mapped_column(Text, nullable=True)
    follow_up: Mapped[str | None] = mapped_column(Text, nullable=True)
    additional_observations: Mapped[str | None] = mapped_column(Text, nullable=True)

    # campi personalizzati: [{id, title, subtitle, description, section, order}]
    custom_fields: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)


class PatientFollowUp(Base):
    __tablename__ = "patient_follow_ups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False)
    professional_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    follow_up_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    follow_up_type: Mapped[str] = mapped_column(String(40), nullable=False, default="SEGUIMIENTO")
    description: Mapped[str] = mapped_column(Text, nullable=False)
    recommendations: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_appointment_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, nullable=False)

    professional: Mapped["User"] = relationship()


# =========================
# Attività di gruppo
# =========================
class GroupActivity(Base):
    __tablename__ = "group_activities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[str] = mapped_column(String(8), nullable=False)
    end_time: Mapped[str] = mapped_column(String(8), nullable=False)
    professional_id: Mapped[str] = mapped_column(ForeignKey("users.id"), nullable=False)
    consultation_id: Mapped[int | None] = mapped_column(ForeignKey("consultations.id"), nullable=True)
    service_id: Mapped[int | None] = mapped_column(ForeignKey("services.id"), nullable=True)
    max_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    current_participants: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[GroupActivityStatus] = mapped_column(
        Enum(GroupActivityStatus), default=GroupActivityStatus.ACTIVE, nullable=False
    )
    color: Mapped[str] = mapped_column(String(20), nullable=False, default="#3B82F6")

    # ricorrenza esplicita, es. "FREQ=WEEKLY;INTERVAL=1;UNTIL=20261231"
    recurrence_rule: Mapped[str | None] = mapped_column(String(120), nullable=True)
    series_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, nullable=False)

    professional: Mapped["User"] = relationship()
    consultation: Mapped["Consultation"] = relationship()
    service: Mapped["Service"] = relationship()
    participants: Mapped[list["GroupActivityParticipant"]] = relationship(
        back_populates="group_activity", cascade="all, delete-orphan"
    )


class GroupActivityParticipant(Base):
    __tablename__ = "group_activity_participants"
    __table_args__ = (UniqueConstraint("group_activity_id", "client_id", name="uq_participant_activity_client"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_activity_id: Mapped[str] = mapped_column(ForeignKey("group_activities.id"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False)
    status: Mapped[ParticipantStatus] = mapped_column(
        Enum(ParticipantStatus), default=ParticipantStatus.REGISTERED, nullable=False
    )
    registration_date: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    group_activity: Mapped["GroupActivity"] = relationship(back_populates="participants")
    client: Mapped["Client"] = relationship()


# =========================
# Lista d'attesa
# =========================
class WaitingListEntry(Base):
    __tablename__ = "waiting_list"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False)
    professional_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    service_id: Mapped[int | None] = mapped_column(ForeignKey("services.id"), nullable=True)
    preferred_date_start: Mapped[dt.date] = mapped_column(Date, nullable=False)
    preferred_date_end: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    preferred_time_preference: Mapped[TimePreference] = mapped_column(
        Enum(TimePreference), default=TimePreference.ANY, nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, nullable=False)

    client: Mapped["Client"] = relationship()
    professional: Mapped["User"] = relationship()
    service: Mapped["Service"] = relationship()


# =========================
# Fatturazione
# =========================
class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False)
    appointment_id: Mapped[int | None] = mapped_column(ForeignKey("appointments.id"), nullable=True)
    group_activity_id: Mapped[str | None] = mapped_column(ForeignKey("group_activities.id"), nullable=True)

    # niente vincolo UNIQUE: il contatore non è atomico (vedi billing.reserve_invoice_number)
    invoice_number: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    issue_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    invoice_type: Mapped[InvoiceType] = mapped_column(Enum(InvoiceType), default=InvoiceType.NORMAL, nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(Enum(InvoiceStatus), default=InvoiceStatus.SENT, nullable=False)

    base_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    irpf_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    retention_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    pdf_url: Mapped[str | None] = mapped_column(String(300), nullable=True)
    created_by: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=dt.datetime.utcnow, nullable=False)

    client: Mapped["Client"] = relationship()
    lines: Mapped[list["InvoiceLine"]] = relationship(back_populates="invoice", cascade="all, delete-orphan")


class InvoiceLine(Base):
    __tablename__ = "invoice_lines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("1"))
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("21"))
    irpf_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    retention_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))
    line_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    professional_id: Mapped[str | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    invoice: Mapped["Invoice"] = relationship(back_populates="lines")
