"""
Griglia oraria del calendario.

Funzioni pure (nessun accesso al DB) che trasformano orari di lavoro, pause e
appuntamenti in posizioni percentuali su un asse verticale giornaliero:
- conversioni hh:mm <-> minuti
- finestra visibile del giorno (unione degli orari dei professionisti)
- posizione/altezza dei blocchi e conversione inversa da pixel a orario
- frammentazione dell'orario di lavoro attorno alle pause
- verifica se un orario è prenotabile

Gli oggetti "schedule" e "break" sono letti per attributi (day_of_week,
start_time, end_time, is_active, breaks), quindi vanno bene sia i modelli ORM
sia le dataclass di questo modulo.
"""
from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from clinica.config import DEFAULT_WORK_END, DEFAULT_WORK_START

MINUTES_PER_DAY = 24 * 60

DAY_NAMES = ["Dom", "Lun", "Mar", "Mer", "Gio", "Ven", "Sab"]


# =========================
# Tipi
# =========================
@dataclass(frozen=True)
class TimeRange:
    """Intervallo [start, end) in minuti dalla mezzanotte."""
    start: int
    end: int

    @property
    def minutes(self) -> int:
        return self.end - self.start

    def contains(self, minute: int) -> bool:
        return self.start <= minute < self.end

    def overlaps(self, other: "TimeRange") -> bool:
        return self.start < other.end and self.end > other.start

    def as_times(self) -> tuple[str, str]:
        return minutes_to_time(self.start), minutes_to_time(self.end)


@dataclass(frozen=True)
class BreakInterval:
    start_time: str
    end_time: str
    break_name: str = "Pausa"
    is_active: bool = True


@dataclass(frozen=True)
class DaySchedule:
    day_of_week: int
    start_time: str
    end_time: str
    is_active: bool = True
    breaks: tuple[BreakInterval, ...] = ()


@dataclass(frozen=True)
class FreeSlot:
    start: str
    end: str
    top: float
    height: float


@dataclass(frozen=True)
class WorkingWindow:
    interval: TimeRange
    breaks: tuple[TimeRange, ...] = field(default_factory=tuple)


# =========================
# Conversioni orario
# =========================
def normalize_time(value: str | dt.time | None) -> str:
    """Porta un orario a "HH:MM" (24h), troncando gli eventuali secondi."""
    if value is None or value == "":
        return "00:00"
    if isinstance(value, dt.time):
        return f"{value.hour:02d}:{value.minute:02d}"
    return minutes_to_time(time_to_minutes(value))


def time_to_minutes(value: str | dt.time) -> int:
    if isinstance(value, dt.time):
        return value.hour * 60 + value.minute

    parts = str(value).strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Orario non valido: {value!r}")
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        raise ValueError(f"Orario non valido: {value!r}") from None

    if not (0 <= hours <= 24 and 0 <= minutes < 60) or (hours == 24 and minutes != 0):
        raise ValueError(f"Orario non valido: {value!r}")
    return hours * 60 + minutes


def minutes_to_time(minutes: int) -> str:
    if minutes < 0 or minutes > MINUTES_PER_DAY:
        raise ValueError(f"Minuti fuori dal giorno: {minutes}")
    hours, mins = divmod(int(minutes), 60)
    return f"{hours:02d}:{mins:02d}"


def end_time(start: str | dt.time, duration_minutes: int) -> str:
    return minutes_to_time(time_to_minutes(start) + duration_minutes)


def _as_minutes(value: str | int | dt.time) -> int:
    if isinstance(value, int):
        return value
    return time_to_minutes(value)


def default_window() -> TimeRange:
    return TimeRange(time_to_minutes(DEFAULT_WORK_START), time_to_minutes(DEFAULT_WORK_END))


# =========================
# Orari di lavoro
# =========================
def _active_breaks(breaks: Iterable[Any]) -> list[TimeRange]:
    ranges = []
    for b in breaks or ():
        if isinstance(b, TimeRange):
            ranges.append(b)
        elif getattr(b, "is_active", True):
            ranges.append(TimeRange(time_to_minutes(b.start_time), time_to_minutes(b.end_time)))
    return ranges


def working_windows_for_day(schedules: Iterable[Any], day_of_week: int) -> list[WorkingWindow]:
    """Intervalli di lavoro attivi del giorno, con le relative pause attive."""
    windows = []
    for s in schedules or ():
        if s.day_of_week != day_of_week or not s.is_active:
            continue
        interval = TimeRange(time_to_minutes(s.start_time), time_to_minutes(s.end_time))
        breaks = tuple(sorted(_active_breaks(getattr(s, "breaks", ())), key=lambda r: r.start))
        windows.append(WorkingWindow(interval=interval, breaks=breaks))
    return sorted(windows, key=lambda w: w.interval.start)


def calendar_time_range(users: Iterable[Any], day_of_week: int) -> TimeRange:
    """
    Finestra visibile del calendario: inviluppo degli orari di tutti gli utenti
    attivi per quel giorno, arrotondato a ore intere. Un utente senza alcun
    orario configurato lavora nella finestra di default (08:00-18:00), che entra
    quindi nell'inviluppo come per schedulable_segments.
    """
    earliest = MINUTES_PER_DAY
    latest = 0

    for user in users:
        if not getattr(user, "is_active", True):
            continue
        schedules = getattr(user, "work_schedules", ())
        if not schedules:
            intervals = [default_window()]
        else:
            intervals = [w.interval for w in working_windows_for_day(schedules, day_of_week)]
        for interval in intervals:
            earliest = min(earliest, interval.start)
            latest = max(latest, interval.end)

    if earliest == MINUTES_PER_DAY:
        return default_window()

    earliest = (earliest // 60) * 60
    latest = min(MINUTES_PER_DAY, math.ceil(latest / 60) * 60)
    return TimeRange(earliest, latest)


def generate_time_slots(users: Iterable[Any], day_of_week: int, interval: int = 30) -> list[str]:
    window = calendar_time_range(users, day_of_week)
    return [minutes_to_time(m) for m in range(window.start, window.end, interval)]


# =========================
# Posizioni sulla griglia
# =========================
def _window(start: str | int | dt.time, end: str | int | dt.time) -> TimeRange:
    window = TimeRange(_as_minutes(start), _as_minutes(end))
    if window.minutes <= 0:
        return default_window()
    return window


def position_for_time(time: str | int | dt.time, start: str | int | dt.time, end: str | int | dt.time) -> float:
    """Offset percentuale (0-100) di un orario nella finestra [start, end]."""
    window = _window(start, end)
    position = (_as_minutes(time) - window.start) / window.minutes * 100
    return max(0.0, min(position, 100.0))


def height_for_duration(duration: int, total_window_minutes: int) -> float:
    if total_window_minutes <= 0:
        total_window_minutes = default_window().minutes
    return duration / total_window_minutes * 100


def time_from_position(
    pixel_y: float,
    container_height: float,
    start: str | int | dt.time,
    end: str | int | dt.time,
    interval: int = 15,
) -> str:
    """Inversa di position_for_time, arrotondata all'intervallo più vicino."""
    if container_height <= 0:
        raise ValueError("Altezza del contenitore non valida")
    if interval <= 0:
        raise ValueError("Intervallo non valido")

    window = _window(start, end)
    fraction = max(0.0, min(pixel_y / container_height, 1.0))
    minutes = math.floor(fraction * window.minutes + window.start)
    # arrotondamento "half up" (non bancario)
    rounded = math.floor(minutes / interval + 0.5) * interval
    return minutes_to_time(max(0, min(rounded, MINUTES_PER_DAY)))


def layout_block(start_time: str, duration: int, window: TimeRange) -> tuple[float, float]:
    """(top, height) in percentuale per un blocco appuntamento."""
    top = position_for_time(start_time, window.start, window.end)
    height = height_for_duration(duration, window.minutes)
    return top, min(height, 100.0 - top)


# =========================
# Pause e slot liberi
# =========================
def fragment_working_hours_around_breaks(
    working_intervals: Sequence[TimeRange],
    breaks: Iterable[Any],
    interval: int = 15,
) -> list[TimeRange]:
    """
    Spezza gli intervalli di lavoro attorno alle pause (ordinate per inizio).
    Un segmento viene emesso solo se lungo almeno `interval` minuti: gli slot
    liberi disegnati non si sovrappongono mai a una pausa.
    """
    ordered_breaks = sorted(_active_breaks(breaks), key=lambda r: r.start)
    segments: list[TimeRange] = []

    for working in sorted(working_intervals, key=lambda r: r.start):
        cursor = working.start
        for b in ordered_breaks:
            if b.end <= cursor or b.start >= working.end:
                continue
            segment_end = min(b.start, working.end)
            if segment_end - cursor >= interval:
                segments.append(TimeRange(cursor, segment_end))
            cursor = max(cursor, b.end)
            if cursor >= working.end:
                break
        if working.end - cursor >= interval:
            segments.append(TimeRange(cursor, working.end))

    return segments


def schedulable_segments(schedules: Sequence[Any], day_of_week: int, interval: int = 15) -> list[TimeRange]:
    """Segmenti prenotabili del giorno; senza orari configurati vale la finestra di default."""
    if not schedules:
        return fragment_working_hours_around_breaks([default_window()], (), interval)

    segments: list[TimeRange] = []
    for window in working_windows_for_day(schedules, day_of_week):
        segments.extend(fragment_working_hours_around_breaks([window.interval], window.breaks, interval))
    return segments


def _appointment_range(appointment: Any) -> TimeRange:
    if isinstance(appointment, dict):
        start = time_to_minutes(appointment["start_time"])
        if appointment.get("end_time"):
            return TimeRange(start, time_to_minutes(appointment["end_time"]))
        return TimeRange(start, start + int(appointment.get("duration") or 0))
    start = time_to_minutes(appointment.start_time)
    if getattr(appointment, "end_time", None):
        return TimeRange(start, time_to_minutes(appointment.end_time))
    return TimeRange(start, start + int(appointment.duration or 0))


def free_slots(
    segments: Sequence[TimeRange],
    appointments: Iterable[Any],
    window: TimeRange,
    interval: int = 30,
) -> list[FreeSlot]:
    """Blocchi liberi di `interval` minuti nei segmenti, esclusi quelli occupati."""
    busy = [_appointment_range(a) for a in appointments]
    slots = []
    for segment in segments:
        minute = segment.start
        while minute + interval <= segment.end:
            slot = TimeRange(minute, minute + interval)
            if not any(slot.overlaps(b) for b in busy):
                start, end = slot.as_times()
                slots.append(
                    FreeSlot(
                        start=start,
                        end=end,
                        top=position_for_time(slot.start, window.start, window.end),
                        height=height_for_duration(interval, window.minutes),
                    )
                )
            minute += interval
    return slots


# =========================
# Prenotabilità
# =========================
def is_schedulable(
    schedules: Sequence[Any],
    day_of_week: int,
    time: str | int | dt.time,
    on_leave: bool = False,
) -> bool:
    """
    False se il professionista è in ferie/assenza, se l'orario cade in una pausa
    o fuori da ogni intervallo di lavoro. Un professionista senza alcun orario
    configurato ha un unico intervallo di default (08:00-18:00).
    """
    if on_leave:
        return False

    minute = _as_minutes(time)

    if not schedules:
        return default_window().contains(minute)

    # basta un intervallo che copra il minuto fuori dalle sue pause
    for window in working_windows_for_day(schedules, day_of_week):
        if not window.interval.contains(minute):
            continue
        if not any(b.contains(minute) for b in window.breaks):
            return True

    return False


def work_schedule_display(schedules: Sequence[Any]) -> str:
    if not schedules:
        return "Nessun orario configurato"

    active = [s for s in schedules if s.is_active]
    if not active:
        return "Nessun orario attivo"

    parts = []
    for s in sorted(active, key=lambda x: (x.day_of_week, time_to_minutes(x.start_time))):
        text = f"{DAY_NAMES[s.day_of_week % 7]}: {normalize_time(s.start_time)}-{normalize_time(s.end_time)}"
        pauses = [
            f"{normalize_time(b.start_time)}-{normalize_time(b.end_time)}"
            for b in getattr(s, "breaks", ()) if b.is_active
        ]
        if pauses:
            text += f" (pausa: {', '.join(pauses)})"
        parts.append(text)
    return ", ".join(parts)


def day_of_week(day: dt.date) -> int:
    """Giorno della settimana con domenica = 0 (convenzione degli orari salvati)."""
    return (day.weekday() + 1) % 7
