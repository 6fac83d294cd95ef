"""
Client per i due servizi esterni del seguimento paziente:
- trascrizione vocale (multipart: audio + nome cliente)
- miglioramento del testo con AI (JSON)

Ogni errore di rete o di elaborazione diventa ExternalServiceError; il form
di partenza non viene mai modificato.
"""
from __future__ import annotations

import logging
from typing import Any

import requests

from clinica import config
from clinica.errors import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)


def _post(url: str, service: str, **kwargs: Any) -> dict:
    try:
        r = requests.post(url, timeout=config.AI_TIMEOUT_SECONDS, **kwargs)
        r.raise_for_status()
        data = r.json()
    except requests.RequestException as exc:
        logger.warning("Servizio %s non disponibile: %s", service, exc)
        raise ExternalServiceError(f"Errore di comunicazione con il servizio {service}.", service=service) from exc
    except ValueError as exc:
        raise ExternalServiceError(f"Risposta non valida dal servizio {service}.", service=service) from exc

    if not isinstance(data, dict) or data.get("error"):
        raise ExternalServiceError(f"Il servizio {service} non ha potuto elaborare la richiesta.", service=service)
    return data


def transcribe_voice_follow_up(audio: bytes, filename: str = "recording.webm", client_name: str = "") -> dict:
    """Ritorna {description, recommendations, followUpType}."""
    if not audio:
        raise ValidationError("Nessuna registrazione audio.", field="audio")

    data = _post(
        config.VOICE_FOLLOWUP_URL,
        "voice",
        files={"audio": (filename, audio, "audio/webm")},
        data={"clientName": client_name or ""},
    )
    return {
        "description": data.get("description") or "",
        "recommendations": data.get("recommendations") or "",
        "followUpType": data.get("followUpType") or "CONSULTA",
    }


def enhance_follow_up(
    description: str,
    recommendations: str = "",
    follow_up_type: str = "CONSULTA",
    client_name: str = "",
) -> dict:
    if not (description or "").strip():
        raise ValidationError("Non c'è contenuto da migliorare.", field="description")

    return _post(
        config.ENHANCE_FOLLOWUP_URL,
        "ai",
        json={
            "description": description,
            "recommendations": recommendations,
            "followUpType": follow_up_type,
            "clientName": client_name,
        },
    )


def apply_enhancement(form: dict, result: dict) -> dict:
    """Nuovo form con i campi migliorati; i campi vuoti nel risultato restano quelli originali."""
    updated = dict(form)
    for key in ("description", "recommendations"):
        if result.get(key):
            updated[key] = result[key]
    return updated
