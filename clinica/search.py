"""
Ricerca clienti per il form appuntamento.

Regole (la prima che trova un cliente vince):
- la query contiene almeno 3 cifre -> telefono "contiene" (solo le cifre)
- la query non è solo numerica     -> nome "contiene" (case-insensitive)
- la query contiene "@"            -> email "contiene"

Il rimbalzo della digitazione è gestito da Debouncer (un handle per
componente, da cancellare alla chiusura) e SearchSession scarta i risultati
di query superate da una più recente.
"""
from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from sqlalchemy import and_, func, select

from clinica.config import SEARCH_DEBOUNCE_SECONDS
from clinica.db import db_session
from clinica.models import Client

logger = logging.getLogger(__name__)

MIN_PHONE_DIGITS = 3
_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class ClientMatch:
    id: int
    name: str
    phone: str | None
    email: str | None
    match_type: str  # phone | name | email


def _like(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def search_plan(query: str) -> list[tuple[str, str]]:
    """Lista ordinata di (campo, termine) da interrogare per la query."""
    q = (query or "").strip()
    if not q:
        return []

    plan = []
    digits = _NON_DIGITS.sub("", q)
    if len(digits) >= MIN_PHONE_DIGITS:
        plan.append(("phone", digits))
    if not q.isdigit():
        plan.append(("name", q))
    if "@" in q:
        plan.append(("email", q))
    return plan


def search_clients(
    organization_id: int,
    query: str,
    exclude_ids: Iterable[int] = (),
    limit: int = 10,
) -> list[ClientMatch]:
    plan = search_plan(query)
    if not plan:
        return []

    excluded = set(exclude_ids)
    found: dict[int, ClientMatch] = {}

    with db_session() as s:
        for field, term in plan:
            column = getattr(Client, field)
            conditions = [Client.organization_id == organization_id]
            if field == "phone":
                conditions.append(column.like(_like(term), escape="\\"))
            else:
                conditions.append(func.lower(column).like(_like(term.lower()), escape="\\"))
            if excluded:
                conditions.append(Client.id.not_in(sorted(excluded)))

            rows = s.execute(
                select(Client.id, Client.name, Client.phone, Client.email)
                .where(and_(*conditions))
                .order_by(Client.name)
                .limit(limit)
            ).all()

            for r in rows:
                if r.id not in found:
                    found[r.id] = ClientMatch(r.id, r.name, r.phone, r.email, field)

    return list(found.values())[:limit]


def prefill_from_query(query: str) -> dict[str, str]:
    """
    Nessun cliente selezionato: la query diventa il telefono (se ha almeno 3
    cifre) oppure nome + cognome del nuovo cliente.
    """
    q = (query or "").strip()
    digits = _NON_DIGITS.sub("", q)
    if len(digits) >= MIN_PHONE_DIGITS:
        return {"phone": digits, "first_name": "", "last_name": ""}
    parts = q.split()
    return {
        "phone": "",
        "first_name": parts[0] if parts else "",
        "last_name": " ".join(parts[1:]),
    }


# =========================
# Debounce
# =========================
class Debouncer:
    """
    Esegue `callback` dopo `delay` secondi dall'ultimo trigger().
    Ogni trigger sostituisce il timer precedente; cancel() (o l'uscita dal
    blocco with) lo rilascia.
    """

    def __init__(self, callback: Callable[..., Any], delay: float = SEARCH_DEBOUNCE_SECONDS) -> None:
        self.callback = callback
        self.delay = delay
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    def trigger(self, *args: Any, **kwargs: Any) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self.callback, args=args, kwargs=kwargs)
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def pending(self) -> bool:
        timer = self._timer
        return timer is not None and timer.is_alive()

    def __enter__(self) -> "Debouncer":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.cancel()


class SearchSession:
    """
    Stato di ricerca di un singolo form: ogni query riceve un token
    crescente e i risultati arrivati con un token vecchio vengono scartati.
    """

    def __init__(
        self,
        organization_id: int,
        on_results: Callable[[list[ClientMatch]], Any],
        delay: float = SEARCH_DEBOUNCE_SECONDS,
        exclude_ids: Iterable[int] = (),
    ) -> None:
        self.organization_id = organization_id
        self.on_results = on_results
        self.exclude_ids = tuple(exclude_ids)
        self.results: list[ClientMatch] = []
        self._token = 0
        self._lock = threading.Lock()
        self._debouncer = Debouncer(self._run, delay)

    def next_token(self) -> int:
        with self._lock:
            self._token += 1
            return self._token

    def is_current(self, token: int) -> bool:
        return token == self._token

    def submit(self, query: str) -> int:
        token = self.next_token()
        if not (query or "").strip():
            self._debouncer.cancel()
            self.deliver(token, [])
        else:
            self._debouncer.trigger(query, token)
        return token

    def deliver(self, token: int, results: list[ClientMatch]) -> bool:
        if not self.is_current(token):
            logger.debug("Risultati scartati (token %s superato da %s)", token, self._token)
            return False
        self.results = results
        self.on_results(results)
        return True

    def _run(self, query: str, token: int) -> None:
        if not self.is_current(token):
            return
        self.deliver(token, search_clients(self.organization_id, query, self.exclude_ids))

    def close(self) -> None:
        self._debouncer.cancel()
        self.next_token()

    def __enter__(self) -> "SearchSession":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
