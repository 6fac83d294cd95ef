from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Root del progetto (accanto a streamlit_app.py)
PROJECT_ROOT = Path(__file__).resolve().parents[1]

DB_PATH = PROJECT_ROOT / "clinica.sqlite"
DATABASE_URL = os.getenv("CLINICA_DATABASE_URL", f"sqlite:///{DB_PATH}")
DB_ECHO = os.getenv("CLINICA_DB_ECHO", "false").lower() == "true"

# In produzione: mettila in variabile d'ambiente
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "60"))

# Archivio PDF fatture
STORAGE_DIR = Path(os.getenv("CLINICA_STORAGE_DIR", str(PROJECT_ROOT / "storage")))
STORAGE_BASE_URL = os.getenv("CLINICA_STORAGE_BASE_URL", "/storage").rstrip("/")

# Endpoint esterni (trascrizione vocale e miglioramento testi)
VOICE_FOLLOWUP_URL = os.getenv("VOICE_FOLLOWUP_URL", "http://127.0.0.1:3000/api/voice-followup")
ENHANCE_FOLLOWUP_URL = os.getenv("ENHANCE_FOLLOWUP_URL", "http://127.0.0.1:3000/api/enhance-followup")
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "30"))

# Finestra di lavoro usata quando un professionista non ha orari configurati
DEFAULT_WORK_START = os.getenv("CLINICA_DEFAULT_WORK_START", "08:00")
DEFAULT_WORK_END = os.getenv("CLINICA_DEFAULT_WORK_END", "18:00")

# Contatore fatture: lettura+incremento separati (default) oppure UPDATE atomico
INVOICE_COUNTER_ATOMIC = os.getenv("CLINICA_INVOICE_COUNTER_ATOMIC", "0").lower() in ("1", "true", "yes")

SEARCH_DEBOUNCE_SECONDS = float(os.getenv("CLINICA_SEARCH_DEBOUNCE_SECONDS", "0.3"))

LOG_LEVEL = os.getenv("CLINICA_LOG_LEVEL", "INFO").upper()


def configure_logging() -> None:
    """Configura il logging applicativo (API e CLI)."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # Riduce la verbosità delle librerie terze
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("multipart").setLevel(logging.WARNING)
