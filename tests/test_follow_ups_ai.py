import datetime as dt

import pytest
import requests

from clinica import ai_client, config
from clinica.ai_client import apply_enhancement, enhance_follow_up, transcribe_voice_follow_up
from clinica.errors import ExternalServiceError, NotFoundError, ValidationError
from clinica.follow_ups import create_follow_up, delete_follow_up, list_follow_ups


class FakeResponse:
    def __init__(self, payload=None, status_code=200, invalid_json=False):
        self.payload = payload
        self.status_code = status_code
        self.invalid_json = invalid_json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        if self.invalid_json:
            raise ValueError("Expecting value")
        return self.payload


@pytest.fixture
def fake_post(monkeypatch):
    calls = []
    responses = []

    def post(url, **kwargs):
        calls.append((url, kwargs))
        response = responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(ai_client.requests, "post", post)
    return calls, responses


def test_voice_transcription_sends_multipart(fake_post):
    calls, responses = fake_post
    responses.append(FakeResponse({"description": "Dolore ridotto", "recommendations": "Stretching"}))

    result = transcribe_voice_follow_up(b"RIFF....", client_name="Giulia Verdi")

    assert result == {"description": "Dolore ridotto", "recommendations": "Stretching", "followUpType": "CONSULTA"}
    url, kwargs = calls[0]
    assert url == config.VOICE_FOLLOWUP_URL
    assert kwargs["files"]["audio"][0] == "recording.webm"
    assert kwargs["data"] == {"clientName": "Giulia Verdi"}
    assert kwargs["timeout"] == config.AI_TIMEOUT_SECONDS


def test_empty_audio_is_rejected(fake_post):
    calls, _ = fake_post
    with pytest.raises(ValidationError) as exc:
        transcribe_voice_follow_up(b"")
    assert exc.value.field == "audio"
    assert calls == []


@pytest.mark.parametrize(
    "response",
    [
        requests.ConnectionError("connection refused"),
        FakeResponse(status_code=500),
        FakeResponse(invalid_json=True),
        FakeResponse({"error": "modello non disponibile"}),
        FakeResponse(["non", "un", "oggetto"]),
    ],
)
def test_service_failures_become_external_errors(fake_post, response):
    _, responses = fake_post
    responses.append(response)

    with pytest.raises(ExternalServiceError) as exc:
        enhance_follow_up("Paziente migliorato")
    assert exc.value.service == "ai"


def test_enhancement_payload_and_merge(fake_post):
    calls, responses = fake_post
    responses.append(FakeResponse({"description": "Il paziente riferisce un netto miglioramento.", "recommendations": ""}))
    form = {"description": "paziente meglio", "recommendations": "ghiaccio", "follow_up_type": "REVISION"}

    result = enhance_follow_up(form["description"], form["recommendations"], "REVISION", "Giulia Verdi")
    merged = apply_enhancement(form, result)

    assert calls[0][1]["json"]["followUpType"] == "REVISION"
    assert merged["description"] == "Il paziente riferisce un netto miglioramento."
    assert merged["recommendations"] == "ghiaccio"
    assert form["description"] == "paziente meglio"

    with pytest.raises(ValidationError):
        enhance_follow_up("   ")


def test_follow_up_crud(client_id, rossi):
    older = create_follow_up(client_id, "Prima seduta", follow_up_date=dt.date(2026, 3, 2), professional_id=rossi.id)
    newer = create_follow_up(
        client_id, "  Controllo  ", follow_up_date=dt.date(2026, 3, 9), follow_up_type="revision",
        professional_id="sconosciuto",
    )

    items = list_follow_ups(client_id)
    assert [f["id"] for f in items] == [newer, older]
    assert items[0]["description"] == "Controllo"
    assert items[0]["follow_up_type"] == "REVISION"
    assert items[0]["professional_id"] is None
    assert items[1]["professional_name"] == "Mario Rossi"
    assert items[1]["follow_up_type"] == "SEGUIMIENTO"

    delete_follow_up(older)
    assert [f["id"] for f in list_follow_ups(client_id)] == [newer]
    with pytest.raises(NotFoundError):
        delete_follow_up(older)


def test_follow_up_validation(client_id):
    with pytest.raises(ValidationError) as exc:
        create_follow_up(client_id, " ")
    assert exc.value.field == "description"
    with pytest.raises(NotFoundError):
        create_follow_up(9999, "Nota")
