import pytest

from clinica.errors import NotFoundError, ValidationError
from clinica.medical_history import (
    MedicalHistoryData,
    add_custom_field,
    compute_bmi,
    get_medical_history,
    remove_custom_field,
    save_medical_history,
)


def test_compute_bmi():
    assert compute_bmi(70, 170) == "24.2"
    assert compute_bmi("70,5", "170") == "24.4"
    assert compute_bmi(None, 170) is None
    assert compute_bmi(70, "") is None
    assert compute_bmi("abc", 170) is None
    assert compute_bmi(70, 0) is None


def test_unknown_keys_are_ignored():
    data = MedicalHistoryData.model_validate({"chief_complaint": "Lombalgia", "campo_vecchio": 1})
    assert data.chief_complaint == "Lombalgia"


def test_custom_fields_are_numbered_per_section():
    data = MedicalHistoryData()
    data = add_custom_field(data, "Scala VAS", section="exploration")
    data = add_custom_field(data, "Test di Lasègue", section="exploration")
    data = add_custom_field(data, "Sport praticati")

    orders = {(f.section, f.title): f.order for f in data.custom_fields}
    assert orders == {
        ("exploration", "Scala VAS"): 0,
        ("exploration", "Test di Lasègue"): 1,
        ("general", "Sport praticati"): 0,
    }

    with pytest.raises(ValidationError) as exc:
        add_custom_field(data, "  ")
    assert exc.value.field == "title"

    first = data.custom_fields[0]
    assert first.id not in {f.id for f in remove_custom_field(data, first.id).custom_fields}


def test_save_creates_then_versions(client_id, rossi):
    assert get_medical_history(client_id) is None

    data = MedicalHistoryData(chief_complaint="Dolore al ginocchio", weight="70", height="170")
    assert save_medical_history(client_id, data, professional_id=rossi.id) == 1

    stored = get_medical_history(client_id)
    assert stored["version"] == 1
    assert stored["professional_id"] == rossi.id
    assert stored["data"].imc == "24.2"

    updated = add_custom_field(stored["data"].model_copy(update={"weight": "80"}), "Scala VAS")
    assert save_medical_history(client_id, updated) == 2

    stored = get_medical_history(client_id)
    assert stored["data"].imc == "27.7"
    assert stored["data"].chief_complaint == "Dolore al ginocchio"
    assert [f.title for f in stored["data"].custom_fields] == ["Scala VAS"]
    # il professionista resta quello del primo salvataggio
    assert stored["professional_id"] == rossi.id


def test_save_for_unknown_client():
    with pytest.raises(NotFoundError):
        save_medical_history(9999, MedicalHistoryData())
