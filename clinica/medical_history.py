"""
Storia clinica del cliente.

MedicalHistoryData è il record tipizzato del form (tutti i campi opzionali)
più la lista dei campi personalizzati. Il salvataggio è un unico upsert per
cliente che incrementa `version`; l'IMC viene ricalcolato da peso (kg) e
altezza (cm) a ogni salvataggio.
"""
from __future__ import annotations

import datetime as dt
import logging
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import and_, select

from clinica.db import db_session
from clinica.errors import NotFoundError, ValidationError
from clinica.models import Client, MedicalHistory

logger = logging.getLogger(__name__)


class CustomField(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str
    subtitle: str | None = None
    description: str | None = None
    section: str = "general"
    order: int = 0


class MedicalHistoryData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    # 1. motivo della consulta
    chief_complaint: str | None = None
    complaint_duration: str | None = None

    # 2. malattia attuale
    detailed_description: str | None = None
    onset: str | None = None
    aggravating_factors: str | None = None
    relieving_factors: str | None = None
    symptom_intensity: str | None = None
    symptom_frequency: str | None = None
    location: str | None = None
    daily_life_impact: str | None = None

    # 3. anamnesi personale
    chronic_diseases: str | None = None
    acute_diseases: str | None = None
    previous_surgeries: str | None = None
    drug_allergies: str | None = None
    food_allergies: str | None = None
    environmental_allergies: str | None = None
    usual_medication: str | None = None
    previous_hospitalizations: str | None = None
    accidents_injuries: str | None = None

    # 4. anamnesi familiare
    hereditary_diseases: str | None = None
    parents_conditions: str | None = None
    siblings_conditions: str | None = None
    grandparents_conditions: str | None = None

    # 5. abitudini
    diet: str | None = None
    physical_activity: str | None = None
    smoker: bool = False
    tobacco_amount: str | None = None
    tobacco_duration: str | None = None
    alcohol: bool = False
    alcohol_amount: str | None = None
    alcohol_frequency: str | None = None
    other_substances: str | None = None
    sleep_quality: str | None = None
    sleep_hours: str | None = None
    stress_level: str | None = None

    # 6. funzione digestiva
    appetite: str | None = None
    digestion: str | None = None
    bowel_movements: str | None = None
    bowel_frequency: str | None = None
    stool_consistency: str | None = None
    bowel_changes: str | None = None
    nausea_vomiting: str | None = None
    reflux: str | None = None

    # 7. funzione urinaria
    urinary_frequency: str | None = None
    dysuria: str | None = None
    incontinence: str | None = None
    urine_color_changes: str | None = None
    urine_odor_changes: str | None = None

    # 8. cardiovascolare e respiratoria
    palpitations: str | None = None
    dyspnea: str | None = None
    chest_pain: str | None = None
    cough: str | None = None
    sputum: str | None = None

    # 9. muscoloscheletrica
    joint_pain: str | None = None
    muscle_pain: str | None = None
    movement_limitations: str | None = None
    weakness_fatigue: str | None = None

    # 10. neurologica
    dizziness_vertigo: str | None = None
    sensory_loss: str | None = None
    strength_loss: str | None = None
    headaches: str | None = None
    visual_disturbances: str | None = None
    hearing_disturbances: str | None = None

    # 11. psicologica
    mood: str | None = None
    anxiety: str | None = None
    depression: str | None = None
    behavior_changes: str | None = None
    sleep_disorders: str | None = None

    # 12. revisione per sistemi
    skin_system: str | None = None
    endocrine_system: str | None = None
    hematologic_system: str | None = None

    # esame obiettivo
    blood_pressure: str | None = None
    heart_rate: str | None = None
    respiratory_rate: str | None = None
    temperature: str | None = None
    oxygen_saturation: str | None = None
    weight: str | None = None
    height: str | None = None
    imc: str | None = None
    clinical_observations: str | None = None

    complementary_tests: str | None = None

    # diagnosi e trattamento
    diagnosis: str | None = None
    medication: str | None = None
    recommendations: str | None = None
    referrals: str | None = None
    follow_up: str | None = None
    additional_observations: str | None = None

    custom_fields: list[CustomField] = Field(default_factory=list)


# sezioni del form (per la UI): titolo -> campi
SECTIONS: dict[str, list[str]] = {
    "Motivo della consulta": ["chief_complaint", "complaint_duration"],
    "Malattia attuale": [
        "detailed_description", "onset", "aggravating_factors", "relieving_factors",
        "symptom_intensity", "symptom_frequency", "location", "daily_life_impact",
    ],
    "Anamnesi personale": [
        "chronic_diseases", "acute_diseases", "previous_surgeries", "drug_allergies",
        "food_allergies", "environmental_allergies", "usual_medication",
        "previous_hospitalizations", "accidents_injuries",
    ],
    "Anamnesi familiare": [
        "hereditary_diseases", "parents_conditions", "siblings_conditions", "grandparents_conditions",
    ],
    "Abitudini": [
        "diet", "physical_activity", "smoker", "tobacco_amount", "tobacco_duration", "alcohol",
        "alcohol_amount", "alcohol_frequency", "other_substances", "sleep_quality", "sleep_hours",
        "stress_level",
    ],
    "Funzione digestiva": [
        "appetite", "digestion", "bowel_movements", "bowel_frequency", "stool_consistency",
        "bowel_changes", "nausea_vomiting", "reflux",
    ],
    "Funzione urinaria": [
        "urinary_frequency", "dysuria", "incontinence", "urine_color_changes", "urine_odor_changes",
    ],
    "Cardiovascolare e respiratoria": ["palpitations", "dyspnea", "chest_pain", "cough", "sputum"],
    "Muscoloscheletrica": ["joint_pain", "muscle_pain", "movement_limitations", "weakness_fatigue"],
    "Neurologica": [
        "dizziness_vertigo", "sensory_loss", "strength_loss", "headaches",
        "visual_disturbances", "hearing_disturbances",
    ],
    "Psicologica": ["mood", "anxiety", "depression", "behavior_changes", "sleep_disorders"],
    "Revisione per sistemi": ["skin_system", "endocrine_system", "hematologic_system"],
    "Esame obiettivo": [
        "blood_pressure", "heart_rate", "respiratory_rate", "temperature", "oxygen_saturation",
        "weight", "height", "imc", "clinical_observations",
    ],
    "Esami complementari": ["complementary_tests"],
    "Diagnosi e trattamento": [
        "diagnosis", "medication", "recommendations", "referrals", "follow_up", "additional_observations",
    ],
}

RECORD_FIELDS = [name for name in MedicalHistoryData.model_fields if name != "custom_fields"]


# =========================
# IMC
# =========================
def _parse_number(value: Any) -> float | None:
    if value is None:
        return None
    text = str(value).strip().replace(",", ".")
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return number if number > 0 else None


def compute_bmi(weight_kg: Any, height_cm: Any) -> str | None:
    """IMC con una cifra decimale ("24.2"); None se uno dei due manca o non è valido."""
    weight = _parse_number(weight_kg)
    height = _parse_number(height_cm)
    if weight is None or height is None:
        return None
    meters = height / 100
    return f"{weight / (meters * meters):.1f}"


def sync_bmi(data: MedicalHistoryData) -> MedicalHistoryData:
    """Copia di `data` con imc allineato a peso/altezza (invariato se non calcolabile)."""
    bmi = compute_bmi(data.weight, data.height)
    if bmi is None:
        return data
    return data.model_copy(update={"imc": bmi})


# =========================
# Campi personalizzati
# =========================
def sort_custom_fields(fields: list[CustomField]) -> list[CustomField]:
    return sorted(fields, key=lambda f: (f.section, f.order))


def add_custom_field(
    data: MedicalHistoryData,
    title: str,
    section: str = "general",
    subtitle: str | None = None,
    description: str | None = None,
) -> MedicalHistoryData:
    if not (title or "").strip():
        raise ValidationError("Il titolo del campo è obbligatorio.", field="title")
    same_section = [f.order for f in data.custom_fields if f.section == section]
    field = CustomField(
        title=title.strip(),
        subtitle=subtitle,
        description=description,
        section=section,
        order=max(same_section, default=-1) + 1,
    )
    return data.model_copy(update={"custom_fields": [*data.custom_fields, field]})


def remove_custom_field(data: MedicalHistoryData, field_id: str) -> MedicalHistoryData:
    return data.model_copy(update={"custom_fields": [f for f in data.custom_fields if f.id != field_id]})


# =========================
# Persistenza
# =========================
def _to_data(row: MedicalHistory) -> MedicalHistoryData:
    values = {name: getattr(row, name) for name in RECORD_FIELDS}
    values["custom_fields"] = row.custom_fields or []
    return MedicalHistoryData.model_validate(values)


def get_medical_history(client_id: int) -> dict | None:
    """Storia clinica attiva del cliente, o None se non esiste ancora."""
    with db_session() as s:
        row = s.execute(
            select(MedicalHistory).where(
                and_(MedicalHistory.client_id == client_id, MedicalHistory.is_active.is_(True))
            )
        ).scalar_one_or_none()
        if row is None:
            return None
        return {
            "id": row.id,
            "client_id": row.client_id,
            "professional_id": row.professional_id,
            "version": row.version,
            "updated_at": row.updated_at.isoformat(),
            "data": _to_data(row),
        }


def save_medical_history(
    client_id: int,
    data: MedicalHistoryData,
    professional_id: str | None = None,
) -> int:
    """Upsert unico per cliente; ritorna la nuova versione."""
    data = sync_bmi(data)
    values = data.model_dump(include=set(RECORD_FIELDS))
    custom = [f.model_dump() for f in sort_custom_fields(data.custom_fields)]

    with db_session() as s:
        client = s.get(Client, client_id)
        if client is None:
            raise NotFoundError("Cliente non trovato.")

        row = s.execute(select(MedicalHistory).where(MedicalHistory.client_id == client_id)).scalar_one_or_none()
        now = dt.datetime.utcnow()
        if row is None:
            row = MedicalHistory(
                client_id=client_id,
                organization_id=client.organization_id,
                professional_id=professional_id,
                version=1,
                created_at=now,
            )
            s.add(row)
        else:
            row.version = (row.version or 1) + 1
            if professional_id:
                row.professional_id = professional_id

        for name, value in values.items():
            setattr(row, name, value)
        row.custom_fields = custom
        row.is_active = True
        row.updated_at = now
        s.flush()
        version = row.version

    logger.info("Storia clinica del cliente %s salvata (versione %s)", client_id, version)
    return version
