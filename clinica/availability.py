from __future__ import annotations

import datetime as dt
import logging
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session, selectinload

from clinica.db import db_session
from clinica.errors import NotFoundError
from clinica.models import (
    Appointment,
    AppointmentStatus,
    Client,
    Service,
    User,
    VacationRequest,
    VacationStatus,
    WorkSchedule,
)
from clinica.timegrid import (
    TimeRange,
    WorkingWindow,
    calendar_time_range,
    day_of_week,
    default_window,
    free_slots,
    generate_time_slots,
    height_for_duration,
    is_schedulable,
    layout_block,
    minutes_to_time,
    normalize_time,
    position_for_time,
    schedulable_segments,
    time_to_minutes,
    working_windows_for_day,
)

logger = logging.getLogger(__name__)

# margine attorno agli appuntamenti esistenti nella ricerca slot pubblica
DEFAULT_BUFFER_MINUTES = 5

# stati che occupano l'agenda nella ricerca slot pubblica
BLOCKING_STATUSES = (AppointmentStatus.CONFIRMED, AppointmentStatus.PENDING)


# =========================
# Query di supporto
# =========================
def _schedules(s: Session, user_id: str) -> list[WorkSchedule]:
    q = (
        select(WorkSchedule)
        .options(selectinload(WorkSchedule.breaks))
        .where(WorkSchedule.user_id == user_id)
        .order_by(WorkSchedule.day_of_week, WorkSchedule.start_time)
    )
    return list(s.scalars(q))


def _on_leave(s: Session, user_id: str, day: dt.date) -> bool:
    q = (
        select(VacationRequest.id)
        .where(
            and_(
                VacationRequest.user_id == user_id,
                VacationRequest.status == VacationStatus.APPROVED,
                VacationRequest.start_date <= day,
                VacationRequest.end_date >= day,
            )
        )
        .limit(1)
    )
    return s.execute(q).first() is not None


def _day_appointments(s: Session, user_id: str, day: dt.date, exclude_id: int | None = None) -> list[Appointment]:
    conditions = [
        Appointment.professional_id == user_id,
        Appointment.date == day,
        Appointment.status != AppointmentStatus.CANCELLED,
    ]
    if exclude_id is not None:
        conditions.append(Appointment.id != exclude_id)
    q = select(Appointment).where(and_(*conditions)).order_by(Appointment.start_time.asc())
    return list(s.scalars(q))


# =========================
# Ferie e prenotabilità
# =========================
def professional_on_leave(user_id: str, day: dt.date) -> bool:
    """True se esiste una richiesta di ferie/assenza approvata che copre il giorno."""
    with db_session() as s:
        return _on_leave(s, user_id, day)


def can_schedule(user_id: str, day: dt.date, time: str | dt.time) -> bool:
    """Verifica ferie, pause e orario di lavoro del professionista per quell'orario."""
    with db_session() as s:
        if s.get(User, user_id) is None:
            raise NotFoundError("Professionista non trovato.")
        return is_schedulable(
            _schedules(s, user_id),
            day_of_week(day),
            time,
            on_leave=_on_leave(s, user_id, day),
        )


def check_specific_availability(
    user_id: str,
    day: dt.date,
    start_time: str | dt.time,
    duration: int,
    exclude_appointment_id: int | None = None,
) -> bool:
    """
    L'intervallo [start, start+duration) deve stare tutto in un segmento
    prenotabile (orario senza pause) e non sovrapporsi ad altri appuntamenti.
    """
    start = time_to_minutes(start_time)
    wanted = TimeRange(start, start + duration)

    with db_session() as s:
        if _on_leave(s, user_id, day):
            return False

        segments = schedulable_segments(_schedules(s, user_id), day_of_week(day), interval=1)
        if not any(seg.start <= wanted.start and wanted.end <= seg.end for seg in segments):
            return False

        for a in _day_appointments(s, user_id, day, exclude_id=exclude_appointment_id):
            busy = TimeRange(time_to_minutes(a.start_time), time_to_minutes(a.end_time))
            if wanted.overlaps(busy):
                return False
        return True


def available_slots(
    user_id: str,
    service_id: int,
    day: dt.date,
    buffer_minutes: int = DEFAULT_BUFFER_MINUTES,
) -> list[dict]:
    """
    Slot prenotabili per un servizio: passo = durata del servizio, scarta gli
    slot che toccano una pausa attiva o che cadono entro `buffer_minutes` da
    un appuntamento confermato/in attesa. Lista vuota se il professionista è
    in ferie o non lavora quel giorno.
    """
    with db_session() as s:
        service = s.get(Service, service_id)
        if not service:
            raise NotFoundError("Servizio non trovato.")
        if service.duration <= 0:
            raise ValueError("Durata del servizio non valida.")

        if _on_leave(s, user_id, day):
            logger.info("Professionista %s in ferie il %s: nessuno slot", user_id, day)
            return []

        schedules = _schedules(s, user_id)
        if schedules:
            windows = working_windows_for_day(schedules, day_of_week(day))
        else:
            windows = [WorkingWindow(interval=default_window())]

        existing = [
            TimeRange(time_to_minutes(a.start_time), time_to_minutes(a.end_time))
            for a in _day_appointments(s, user_id, day)
            if a.status in BLOCKING_STATUSES
        ]

    duration = service.duration
    slots = []
    for window in windows:
        minute = window.interval.start
        while minute + duration <= window.interval.end:
            slot = TimeRange(minute, minute + duration)
            in_break = any(slot.overlaps(b) for b in window.breaks)
            conflict = any(
                slot.start < busy.end + buffer_minutes and slot.end + buffer_minutes > busy.start
                for busy in existing
            )
            if not in_break and not conflict:
                start, end = slot.as_times()
                slots.append({"start_time": start, "end_time": end, "available": True})
            minute += duration

    return slots


# =========================
# Vista calendario giornaliera
# =========================
def calendar_day(
    organization_id: int,
    day: dt.date,
    professional_ids: list[str] | None = None,
    interval: int = 30,
) -> dict[str, Any]:
    """
    Versione 'flat' della griglia giornaliera (safe per Streamlit): per ogni
    professionista appuntamenti, pause e slot liberi con top/height in percentuale.
    """
    dow = day_of_week(day)

    with db_session() as s:
        q = (
            select(User)
            .options(selectinload(User.work_schedules).selectinload(WorkSchedule.breaks))
            .where(and_(User.organization_id == organization_id, User.type == 1, User.is_active.is_(True)))
            .order_by(User.name)
        )
        if professional_ids:
            q = q.where(User.id.in_(professional_ids))
        users = list(s.scalars(q))

        window = calendar_time_range(users, dow)
        columns = []

        for u in users:
            on_leave = _on_leave(s, u.id, day)
            rows = s.execute(
                select(Appointment, Client.name)
                .join(Client, Client.id == Appointment.client_id)
                .where(
                    and_(
                        Appointment.professional_id == u.id,
                        Appointment.date == day,
                        Appointment.status != AppointmentStatus.CANCELLED,
                    )
                )
                .order_by(Appointment.start_time.asc())
            ).all()

            appointments = []
            for a, client_name in rows:
                top, height = layout_block(a.start_time, a.duration, window)
                appointments.append(
                    {
                        "id": a.id,
                        "client": client_name,
                        "start_time": normalize_time(a.start_time),
                        "end_time": normalize_time(a.end_time),
                        "duration": a.duration,
                        "status": a.status.value,
                        "top": top,
                        "height": height,
                    }
                )

            breaks = []
            for w in working_windows_for_day(u.work_schedules, dow):
                for b in w.breaks:
                    breaks.append(
                        {
                            "start_time": minutes_to_time(b.start),
                            "end_time": minutes_to_time(b.end),
                            "top": position_for_time(b.start, window.start, window.end),
                            "height": height_for_duration(b.minutes, window.minutes),
                        }
                    )

            if on_leave:
                slots = []
            else:
                segments = schedulable_segments(u.work_schedules, dow, interval=interval)
                slots = [
                    {"start_time": f.start, "end_time": f.end, "top": f.top, "height": f.height}
                    for f in free_slots(segments, [a for a, _ in rows], window, interval=interval)
                ]

            columns.append(
                {
                    "id": u.id,
                    "name": u.name,
                    "color": u.color,
                    "on_leave": on_leave,
                    "appointments": appointments,
                    "breaks": breaks,
                    "free_slots": slots,
                }
            )

    return {
        "date": day.isoformat(),
        "day_of_week": dow,
        "start": minutes_to_time(window.start),
        "end": minutes_to_time(window.end),
        "time_slots": generate_time_slots(users, dow, interval),
        "professionals": columns,
    }
