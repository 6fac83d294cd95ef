"""
Attività di gruppo.

- CRUD e filtri
- ricorrenza esplicita (recurrence_rule + series_id): la creazione con una
  regola genera una riga per data, tutte con lo stesso series_id
- rilevamento euristico delle serie per le righe create senza regola
- gestione iscritti e statistiche
"""
from __future__ import annotations

import datetime as dt
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Iterable

from dateutil.relativedelta import relativedelta
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from clinica.db import db_session
from clinica.errors import NotFoundError, ValidationError
from clinica.models import (
    Client,
    GroupActivity,
    GroupActivityParticipant,
    GroupActivityStatus,
    ParticipantStatus,
    User,
)
from clinica.timegrid import normalize_time, time_to_minutes

logger = logging.getLogger(__name__)

# freq -> (intervallo massimo, orizzonte massimo in mesi, istanze massime)
FREQUENCY_LIMITS = {
    "DAILY": (7, 6, 180),
    "WEEKLY": (12, 12, 52),
    "MONTHLY": (12, 24, 24),
}

FREQUENCY_LABELS = {
    "DAILY": ("giorno", "giorni"),
    "WEEKLY": ("settimana", "settimane"),
    "MONTHLY": ("mese", "mesi"),
}

EDITABLE_FIELDS = {
    "name", "description", "date", "start_time", "end_time", "professional_id",
    "consultation_id", "service_id", "max_participants", "status", "color",
}

# nelle modifiche di serie la data resta quella della singola occorrenza
SERIES_FIELDS = EDITABLE_FIELDS - {"date"}


# =========================
# Ricorrenza
# =========================
@dataclass(frozen=True)
class RecurrenceRule:
    """Regola di ricorrenza: termina a una data (`until`) o dopo `count` occorrenze."""

    freq: str
    interval: int
    until: dt.date | None = None
    count: int | None = None

    def to_string(self) -> str:
        head = f"FREQ={self.freq};INTERVAL={self.interval}"
        if self.count is not None:
            return f"{head};COUNT={self.count}"
        return f"{head};UNTIL={self.until.strftime('%Y%m%d')}"

    @classmethod
    def parse(cls, text: str) -> "RecurrenceRule":
        parts = {}
        for chunk in (text or "").split(";"):
            if "=" not in chunk:
                continue
            key, value = chunk.split("=", 1)
            parts[key.strip().upper()] = value.strip()

        try:
            if "UNTIL" not in parts and "COUNT" not in parts:
                raise KeyError("UNTIL")
            return cls(
                freq=parts["FREQ"].upper(),
                interval=int(parts.get("INTERVAL", "1")),
                until=dt.datetime.strptime(parts["UNTIL"], "%Y%m%d").date() if "UNTIL" in parts else None,
                count=int(parts["COUNT"]) if "COUNT" in parts else None,
            )
        except (KeyError, ValueError):
            raise ValueError(f"Regola di ricorrenza non valida: {text!r}") from None

    def describe(self) -> str:
        singular, plural = FREQUENCY_LABELS.get(self.freq, ("volta", "volte"))
        every = f"Ogni {singular}" if self.interval == 1 else f"Ogni {self.interval} {plural}"
        if self.count is not None:
            return f"{every} per {self.count} volte"
        return f"{every} fino al {self.until.strftime('%d/%m/%Y')}"


def _nth_date(start: dt.date, freq: str, step: int) -> dt.date:
    if freq == "DAILY":
        return start + dt.timedelta(days=step)
    if freq == "WEEKLY":
        return start + dt.timedelta(weeks=step)
    if freq == "MONTHLY":
        # fine mese: 31/01 + 1 mese = 28/02 (o 29)
        return start + relativedelta(months=step)
    raise ValueError(f"Frequenza non supportata: {freq}")


def expand_recurrence(start: dt.date, rule: RecurrenceRule, max_instances: int | None = None) -> list[dt.date]:
    """
    Date della serie: sempre la data iniziale, poi ogni passo fino a `until`
    incluso, oppure fino a `count` occorrenze in tutto (la prima compresa).
    """
    if max_instances is None:
        max_instances = FREQUENCY_LIMITS.get(rule.freq, (0, 0, 50))[2]
    if rule.count is not None:
        max_instances = min(max_instances, rule.count)

    dates = [start]
    n = 1
    while len(dates) < max_instances:
        current = _nth_date(start, rule.freq, n * rule.interval)
        if rule.until is not None and current > rule.until:
            break
        dates.append(current)
        n += 1
    return dates


def validate_recurrence(
    rule: RecurrenceRule,
    today: dt.date | None = None,
    start: dt.date | None = None,
) -> list[str]:
    today = today or dt.date.today()
    errors = []

    if rule.freq not in FREQUENCY_LIMITS:
        return [f"Tipo di ricorrenza non supportato: {rule.freq}"]

    max_interval, horizon_months, max_instances = FREQUENCY_LIMITS[rule.freq]
    label = FREQUENCY_LABELS[rule.freq][1]

    if rule.interval < 1:
        errors.append("L'intervallo deve essere maggiore di 0")
    elif rule.interval > max_interval:
        errors.append(f"L'intervallo massimo è {max_interval} {label}")

    horizon = today + relativedelta(months=horizon_months)
    if rule.count is not None:
        if rule.count < 1:
            errors.append("Il numero di occorrenze deve essere maggiore di 0")
        elif rule.count > max_instances:
            errors.append(f"Il numero massimo di occorrenze è {max_instances}")
        elif start is not None and rule.interval >= 1 and _nth_date(start, rule.freq, (rule.count - 1) * rule.interval) > horizon:
            # l'ultima occorrenza della serie
            errors.append(f"La serie non può superare {horizon_months} mesi")
    elif rule.until is None:
        errors.append("Indicare una data di fine o un numero di occorrenze")
    elif rule.until < today:
        errors.append("La data di fine deve essere futura")
    elif rule.until > horizon:
        errors.append(f"La serie non può superare {horizon_months} mesi")

    return errors


# =========================
# Serie implicite (righe senza regola)
# =========================
@dataclass(frozen=True)
class DetectedSeries:
    name: str
    activity_ids: tuple[str, ...]
    interval_days: int


def _get(obj: Any, name: str) -> Any:
    return obj.get(name) if isinstance(obj, dict) else getattr(obj, name, None)


def _as_date(value: Any) -> dt.date:
    if isinstance(value, dt.date):
        return value
    return dt.date.fromisoformat(str(value))


def detect_series(activities: Iterable[Any]) -> list[DetectedSeries]:
    """
    Raggruppa per nome, professionista, orario e capienza; un gruppo di almeno
    due attività è una serie se tutti gli scarti tra date consecutive sono
    uguali e pari a 1 giorno o a un multiplo di 7.
    """
    groups: dict[tuple, list[Any]] = defaultdict(list)
    for a in activities:
        if _get(a, "series_id") or _get(a, "recurrence_rule"):
            continue
        key = (
            (_get(a, "name") or "").strip().lower(),
            _get(a, "professional_id"),
            normalize_time(_get(a, "start_time")),
            normalize_time(_get(a, "end_time")),
            _get(a, "max_participants"),
        )
        groups[key].append(a)

    found = []
    for items in groups.values():
        if len(items) < 2:
            continue
        items.sort(key=lambda x: _as_date(_get(x, "date")))
        dates = [_as_date(_get(x, "date")) for x in items]
        gaps = {(b - a).days for a, b in zip(dates, dates[1:])}
        if len(gaps) != 1:
            continue
        gap = gaps.pop()
        if gap == 1 or (gap > 0 and gap % 7 == 0):
            found.append(
                DetectedSeries(
                    name=_get(items[0], "name"),
                    activity_ids=tuple(str(_get(x, "id")) for x in items),
                    interval_days=gap,
                )
            )
    return found


# =========================
# CRUD
# =========================
def _validate_fields(name: str, start_time: str, end_time: str, max_participants: int) -> None:
    if not (name or "").strip():
        raise ValidationError("Il nome è obbligatorio.", field="name")
    try:
        start, end = time_to_minutes(start_time), time_to_minutes(end_time)
    except ValueError as exc:
        raise ValidationError(str(exc), field="start_time") from None
    if end <= start:
        raise ValidationError("L'ora di fine deve essere successiva all'inizio.", field="end_time")
    if max_participants < 1:
        raise ValidationError("Il numero massimo di partecipanti deve essere almeno 1.", field="max_participants")


def create_group_activity(
    organization_id: int,
    name: str,
    date: dt.date,
    start_time: str,
    end_time: str,
    professional_id: str,
    max_participants: int = 10,
    description: str | None = None,
    consultation_id: int | None = None,
    service_id: int | None = None,
    color: str = "#3B82F6",
    recurrence: RecurrenceRule | None = None,
    today: dt.date | None = None,
) -> list[str]:
    """Crea l'attività (o tutte le occorrenze della serie). Ritorna gli id creati."""
    _validate_fields(name, start_time, end_time, max_participants)

    dates = [date]
    series_id = None
    rule_text = None
    if recurrence is not None:
        errors = validate_recurrence(recurrence, today, start=date)
        if errors:
            raise ValidationError("; ".join(errors), field="recurrence")
        dates = expand_recurrence(date, recurrence)
        series_id = str(uuid.uuid4())
        rule_text = recurrence.to_string()

    with db_session() as s:
        if s.get(User, professional_id) is None:
            raise NotFoundError("Professionista non trovato.")

        ids = []
        for day in dates:
            a = GroupActivity(
                organization_id=organization_id,
                name=name.strip(),
                description=description,
                date=day,
                start_time=normalize_time(start_time),
                end_time=normalize_time(end_time),
                professional_id=professional_id,
                consultation_id=consultation_id,
                service_id=service_id,
                max_participants=max_participants,
                current_participants=0,
                color=color,
                recurrence_rule=rule_text,
                series_id=series_id,
            )
            s.add(a)
            s.flush()
            ids.append(a.id)

    if series_id:
        logger.info("Serie %s creata: %d occorrenze di '%s'", series_id, len(ids), name)
    return ids


def _apply_changes(a: GroupActivity, changes: dict, allowed: set[str]) -> None:
    for key, value in changes.items():
        if key not in allowed:
            raise ValidationError(f"Campo non modificabile: {key}", field=key)
        if key == "status" and not isinstance(value, GroupActivityStatus):
            try:
                value = GroupActivityStatus(value)
            except ValueError:
                raise ValidationError(f"Stato non valido: {value}", field="status") from None
        if key in ("start_time", "end_time"):
            value = normalize_time(value)
        setattr(a, key, value)
    _validate_fields(a.name, a.start_time, a.end_time, a.max_participants)
    a.updated_at = dt.datetime.utcnow()


def update_group_activity(activity_id: str, **changes: Any) -> None:
    with db_session() as s:
        a = s.get(GroupActivity, activity_id)
        if a is None:
            raise NotFoundError("Attività di gruppo non trovata.")
        _apply_changes(a, changes, EDITABLE_FIELDS)


def update_series(series_id: str, **changes: Any) -> int:
    """Applica le stesse modifiche a tutte le occorrenze (la data resta invariata)."""
    with db_session() as s:
        rows = list(s.scalars(select(GroupActivity).where(GroupActivity.series_id == series_id)))
        if not rows:
            raise NotFoundError("Serie non trovata.")
        for a in rows:
            _apply_changes(a, changes, SERIES_FIELDS)
        return len(rows)


def delete_group_activity(activity_id: str) -> None:
    with db_session() as s:
        a = s.get(GroupActivity, activity_id)
        if a is None:
            raise NotFoundError("Attività di gruppo non trovata.")
        s.delete(a)


def delete_series(series_id: str) -> int:
    with db_session() as s:
        rows = list(s.scalars(select(GroupActivity).where(GroupActivity.series_id == series_id)))
        for a in rows:
            s.delete(a)
        logger.info("Serie %s eliminata (%d occorrenze)", series_id, len(rows))
        return len(rows)


def _describe_rule(text: str | None) -> str | None:
    if not text:
        return None
    try:
        return RecurrenceRule.parse(text).describe()
    except ValueError:
        return None


def _activity_dict(a: GroupActivity, with_participants: bool = False) -> dict:
    data = {
        "id": a.id,
        "name": a.name,
        "description": a.description,
        "date": a.date.isoformat(),
        "start_time": normalize_time(a.start_time),
        "end_time": normalize_time(a.end_time),
        "professional_id": a.professional_id,
        "professional": a.professional.name if a.professional else None,
        "consultation_id": a.consultation_id,
        "service_id": a.service_id,
        "max_participants": a.max_participants,
        "current_participants": a.current_participants,
        "status": a.status.value,
        "color": a.color,
        "recurrence_rule": a.recurrence_rule,
        "recurrence_description": _describe_rule(a.recurrence_rule),
        "series_id": a.series_id,
    }
    if with_participants:
        data["participants"] = [
            {
                "id": p.id,
                "client_id": p.client_id,
                "client": p.client.name if p.client else None,
                "status": p.status.value,
                "registration_date": p.registration_date.isoformat(),
                "notes": p.notes,
            }
            for p in a.participants
        ]
    return data


def list_group_activities(
    organization_id: int,
    status: str | None = None,
    professional_id: str | None = None,
    consultation_id: int | None = None,
    service_id: int | None = None,
    date_from: dt.date | None = None,
    date_to: dt.date | None = None,
) -> list[dict]:
    conditions = [GroupActivity.organization_id == organization_id]
    if status:
        try:
            conditions.append(GroupActivity.status == GroupActivityStatus(status))
        except ValueError:
            raise ValidationError(f"Stato non valido: {status}", field="status") from None
    if professional_id:
        conditions.append(GroupActivity.professional_id == professional_id)
    if consultation_id:
        conditions.append(GroupActivity.consultation_id == consultation_id)
    if service_id:
        conditions.append(GroupActivity.service_id == service_id)
    if date_from:
        conditions.append(GroupActivity.date >= date_from)
    if date_to:
        conditions.append(GroupActivity.date <= date_to)

    with db_session() as s:
        q = (
            select(GroupActivity)
            .options(selectinload(GroupActivity.professional))
            .where(and_(*conditions))
            .order_by(GroupActivity.date.asc(), GroupActivity.start_time.asc())
        )
        return [_activity_dict(a) for a in s.scalars(q)]


def get_group_activity(activity_id: str) -> dict:
    with db_session() as s:
        a = s.execute(
            select(GroupActivity)
            .options(
                selectinload(GroupActivity.professional),
                selectinload(GroupActivity.participants).selectinload(GroupActivityParticipant.client),
            )
            .where(GroupActivity.id == activity_id)
        ).scalar_one_or_none()
        if a is None:
            raise NotFoundError("Attività di gruppo non trovata.")
        return _activity_dict(a, with_participants=True)


# =========================
# Iscritti
# =========================
def _refresh_count(s: Session, activity: GroupActivity) -> int:
    s.flush()
    count = s.execute(
        select(func.count(GroupActivityParticipant.id)).where(
            and_(
                GroupActivityParticipant.group_activity_id == activity.id,
                GroupActivityParticipant.status != ParticipantStatus.CANCELLED,
            )
        )
    ).scalar_one()
    activity.current_participants = count
    return count


def add_participant(activity_id: str, client_id: int, notes: str | None = None) -> int:
    with db_session() as s:
        a = s.get(GroupActivity, activity_id)
        if a is None:
            raise NotFoundError("Attività di gruppo non trovata.")
        if s.get(Client, client_id) is None:
            raise NotFoundError("Cliente non trovato.")
        if a.status == GroupActivityStatus.CANCELLED:
            raise ValidationError("L'attività è annullata.", field="group_activity_id")

        existing = s.execute(
            select(GroupActivityParticipant).where(
                and_(
                    GroupActivityParticipant.group_activity_id == activity_id,
                    GroupActivityParticipant.client_id == client_id,
                )
            )
        ).scalar_one_or_none()
        if existing is not None and existing.status != ParticipantStatus.CANCELLED:
            raise ValidationError("Il cliente è già iscritto a questa attività.", field="client_id")

        if _refresh_count(s, a) >= a.max_participants:
            raise ValidationError("L'attività è al completo.", field="group_activity_id")

        if existing is not None:
            # reiscrizione dopo una cancellazione
            existing.status = ParticipantStatus.REGISTERED
            existing.notes = notes
            existing.registration_date = dt.datetime.utcnow()
            participant = existing
        else:
            participant = GroupActivityParticipant(group_activity_id=activity_id, client_id=client_id, notes=notes)
            s.add(participant)
        try:
            _refresh_count(s, a)
        except IntegrityError:
            raise ValidationError("Il cliente è già iscritto a questa attività.", field="client_id") from None
        return participant.id


def update_participant_status(participant_id: int, status: str | ParticipantStatus) -> None:
    try:
        new_status = status if isinstance(status, ParticipantStatus) else ParticipantStatus(status)
    except ValueError:
        raise ValidationError(f"Stato non valido: {status}", field="status") from None

    with db_session() as s:
        p = s.get(GroupActivityParticipant, participant_id)
        if p is None:
            raise NotFoundError("Partecipante non trovato.")
        if p.status == ParticipantStatus.CANCELLED and new_status != ParticipantStatus.CANCELLED:
            # il partecipante torna a occupare un posto
            activity = p.group_activity
            if _refresh_count(s, activity) >= activity.max_participants:
                raise ValidationError("L'attività è al completo.", field="group_activity_id")
        p.status = new_status
        _refresh_count(s, p.group_activity)


def remove_participant(participant_id: int) -> None:
    with db_session() as s:
        p = s.get(GroupActivityParticipant, participant_id)
        if p is None:
            raise NotFoundError("Partecipante non trovato.")
        activity = p.group_activity
        s.delete(p)
        _refresh_count(s, activity)


# =========================
# Statistiche
# =========================
def activity_stats(
    organization_id: int,
    date_from: dt.date | None = None,
    date_to: dt.date | None = None,
) -> dict:
    """
    Conteggi per stato, iscritti totali e tasso medio di presenza
    (presenti / (presenti + assenti), in percentuale).
    """
    conditions = [GroupActivity.organization_id == organization_id]
    if date_from:
        conditions.append(GroupActivity.date >= date_from)
    if date_to:
        conditions.append(GroupActivity.date <= date_to)

    with db_session() as s:
        activities = list(
            s.scalars(
                select(GroupActivity)
                .options(selectinload(GroupActivity.participants))
                .where(and_(*conditions))
            )
        )

    by_status = {st.value: 0 for st in GroupActivityStatus}
    participants = attended = no_show = 0
    for a in activities:
        by_status[a.status.value] += 1
        participants += a.current_participants
        for p in a.participants:
            if p.status == ParticipantStatus.ATTENDED:
                attended += 1
            elif p.status == ParticipantStatus.NO_SHOW:
                no_show += 1

    marked = attended + no_show
    return {
        "total": len(activities),
        "by_status": by_status,
        "total_participants": participants,
        "attendance_rate": round(attended / marked * 100, 1) if marked else 0.0,
    }
