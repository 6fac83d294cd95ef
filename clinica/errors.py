"""
Errori applicativi.

Tre famiglie, tutte con messaggi leggibili da mostrare direttamente all'utente:
- ValidationError     : dato del form mancante o non valido (con il campo)
- NotFoundError       : riga referenziata inesistente
- ExternalServiceError: trascrizione vocale, AI, archivio PDF
"""
from __future__ import annotations


class ValidationError(ValueError):
    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class NotFoundError(LookupError):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ExternalServiceError(RuntimeError):
    def __init__(self, message: str, service: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.service = service
