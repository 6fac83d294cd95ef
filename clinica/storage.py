"""
Archivio locale dei PDF.

I file vengono salvati in <CLINICA_STORAGE_DIR>/invoices/<org_id>/ e l'URL
restituito è relativo a CLINICA_STORAGE_BASE_URL (servito da api_main).
"""
from __future__ import annotations

import logging
import re
from pathlib import Path

from clinica import config
from clinica.errors import ExternalServiceError

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(filename: str) -> str:
    name = _UNSAFE.sub("_", Path(filename).name).strip("._")
    if not name:
        raise ValueError("Nome file non valido")
    if not name.lower().endswith(".pdf"):
        name += ".pdf"
    return name


def invoice_dir(organization_id: int) -> Path:
    return Path(config.STORAGE_DIR) / "invoices" / str(organization_id)


def save_pdf(pdf_bytes: bytes, filename: str, organization_id: int) -> str:
    """Scrive il PDF su disco (sovrascrive se esiste) e ritorna l'URL pubblico."""
    name = safe_filename(filename)
    folder = invoice_dir(organization_id)
    try:
        folder.mkdir(parents=True, exist_ok=True)
        (folder / name).write_bytes(pdf_bytes)
    except OSError as exc:
        logger.error("Salvataggio PDF fallito (%s): %s", name, exc)
        raise ExternalServiceError("Impossibile salvare il PDF.", service="storage") from exc

    logger.info("PDF salvato: invoices/%s/%s (%d byte)", organization_id, name, len(pdf_bytes))
    return f"{config.STORAGE_BASE_URL}/invoices/{organization_id}/{name}"


def resolve_url(url: str) -> Path:
    """Percorso su disco di un URL restituito da save_pdf."""
    prefix = f"{config.STORAGE_BASE_URL}/"
    if not url.startswith(prefix):
        raise ValueError(f"URL non appartenente all'archivio: {url}")
    relative = Path(url[len(prefix):])
    if ".." in relative.parts:
        raise ValueError(f"URL non valido: {url}")
    return Path(config.STORAGE_DIR) / relative
