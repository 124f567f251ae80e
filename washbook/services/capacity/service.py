"""Capacity slot ledger.

Slots are generated on demand per service day (Mon-Sat, six 2-hour windows
from 10:00 to 22:00 service-local time) and never deleted. Reservation and
release are single conditional UPDATEs, so concurrent bookings cannot push a
slot past `max_units` or below zero.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError

from washbook.common.config import CommonSettings, settings
from washbook.common.db import as_utc, utcnow
from washbook.common.errors import BookingValidationError, SlotNotFoundError
from washbook.common.logging import logger
from washbook.common.metrics import capacity_reservations_total
from washbook.common.state_machine import ServiceType
from washbook.services.capacity.models import CapacitySlot, Partner

WINDOW_START_HOURS = (10, 12, 14, 16, 18, 20)
WINDOW_LENGTH = timedelta(hours=2)


@dataclass
class AvailableSlot:
    """One bookable window, consolidated across partners."""

    slot_start: datetime
    slot_end: datetime
    partner_id: str
    available_units: int
    max_units: int


class CapacityService:
    def __init__(self, session_factory, config: CommonSettings = settings) -> None:
        self.session_factory = session_factory
        self.config = config
        self.tz = ZoneInfo(config.service_timezone)

    def windows_for(self, day: date) -> list[tuple[datetime, datetime]]:
        """UTC (start, end) pairs for `day`; empty on Sundays."""

        if day.weekday() == 6:
            return []
        windows = []
        for hour in WINDOW_START_HOURS:
            start = datetime.combine(day, time(hour), tzinfo=self.tz)
            windows.append((start.astimezone(timezone.utc), (start + WINDOW_LENGTH).astimezone(timezone.utc)))
        return windows

    def _day_bounds(self, day: date) -> tuple[datetime, datetime]:
        start = datetime.combine(day, time(0), tzinfo=self.tz)
        end = datetime.combine(day + timedelta(days=1), time(0), tzinfo=self.tz)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    def _slots_exist(self, db, service_type: str, day: date) -> bool:
        start, end = self._day_bounds(day)
        return (
            db.execute(
                select(CapacitySlot.id)
                .where(
                    CapacitySlot.service_type == service_type,
                    CapacitySlot.slot_start >= start,
                    CapacitySlot.slot_start < end,
                )
                .limit(1)
            ).scalar_one_or_none()
            is not None
        )

    async def ensure_slots_exist(self, service_type: str, day: date) -> int:
        """Generate the day's slots for every active partner; returns rows created.

        Safe to call repeatedly and concurrently: a generator that loses the
        race hits the unique constraint and backs off.
        """

        windows = self.windows_for(day)
        if not windows:
            return 0
        with self.session_factory() as db:
            if self._slots_exist(db, service_type, day):
                return 0
            partner_ids = db.execute(
                select(Partner.id).where(Partner.service_type == service_type, Partner.active.is_(True))
            ).scalars().all()
            if not partner_ids:
                logger.info("slot_generation_skipped service_type=%s day=%s reason=no_partners", service_type, day)
                return 0
            db.add_all(
                CapacitySlot(
                    partner_id=partner_id,
                    service_type=service_type,
                    slot_start=start,
                    slot_end=end,
                    max_units=self.config.slot_default_max_units,
                    reserved_units=0,
                )
                for partner_id in partner_ids
                for start, end in windows
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info("slot_generation_raced service_type=%s day=%s", service_type, day)
                return 0
        created = len(partner_ids) * len(windows)
        logger.info("slots_generated service_type=%s day=%s count=%s", service_type, day, created)
        return created

    async def populate_upcoming(self, days: int | None = None, today: date | None = None) -> int:
        """Generate slots for the next `days` days for every service type."""

        days = days if days is not None else self.config.slot_populate_days
        today = today or utcnow().astimezone(self.tz).date()
        created = 0
        for offset in range(days):
            for service_type in ServiceType:
                created += await self.ensure_slots_exist(service_type.value, today + timedelta(days=offset))
        return created

    async def get_available_slots(
        self, service_type: str, day: date, now: datetime | None = None
    ) -> list[AvailableSlot]:
        """Bookable windows for `day`, skipping full, past and too-soon slots."""

        now = as_utc(now) if now else utcnow()
        earliest = now + timedelta(hours=self.config.slot_lead_time_hours)
        start, end = self._day_bounds(day)
        with self.session_factory() as db:
            slots = db.execute(
                select(CapacitySlot)
                .join(Partner, Partner.id == CapacitySlot.partner_id)
                .where(
                    Partner.active.is_(True),
                    CapacitySlot.service_type == service_type,
                    CapacitySlot.slot_start >= start,
                    CapacitySlot.slot_start < end,
                )
                .order_by(CapacitySlot.slot_start, CapacitySlot.partner_id)
            ).scalars().all()

        consolidated: dict[tuple[datetime, datetime], AvailableSlot] = {}
        for slot in slots:
            slot_start, slot_end = as_utc(slot.slot_start), as_utc(slot.slot_end)
            if slot.reserved_units >= slot.max_units or slot_start < earliest:
                continue
            remaining = slot.max_units - slot.reserved_units
            window = consolidated.get((slot_start, slot_end))
            if window is None:
                consolidated[(slot_start, slot_end)] = AvailableSlot(
                    slot_start=slot_start,
                    slot_end=slot_end,
                    partner_id=slot.partner_id,
                    available_units=remaining,
                    max_units=slot.max_units,
                )
            else:
                window.available_units += remaining
                window.max_units += slot.max_units
        return list(consolidated.values())

    def _slot_filter(self, partner_id: str, service_type: str, slot_start: datetime):
        return (
            CapacitySlot.partner_id == partner_id,
            CapacitySlot.service_type == service_type,
            CapacitySlot.slot_start == as_utc(slot_start),
        )

    async def reserve(self, partner_id: str, service_type: str, slot_start: datetime, units: int = 1) -> bool:
        """Take `units` from the slot; False when it would overflow."""

        if units <= 0:
            raise BookingValidationError("units must be positive")
        where = self._slot_filter(partner_id, service_type, slot_start)
        with self.session_factory() as db:
            result = db.execute(
                update(CapacitySlot)
                .where(*where, CapacitySlot.reserved_units + units <= CapacitySlot.max_units)
                .values(reserved_units=CapacitySlot.reserved_units + units)
            )
            if result.rowcount == 1:
                db.commit()
                capacity_reservations_total.labels(service_type=service_type, result="reserved").inc()
                return True
            exists = db.execute(select(CapacitySlot.id).where(*where)).scalar_one_or_none()
            db.rollback()
        if exists is None:
            capacity_reservations_total.labels(service_type=service_type, result="not_found").inc()
            raise SlotNotFoundError(f"No {service_type} slot for partner {partner_id} at {as_utc(slot_start).isoformat()}")
        capacity_reservations_total.labels(service_type=service_type, result="full").inc()
        logger.info(
            "capacity_full partner_id=%s service_type=%s slot_start=%s units=%s", partner_id, service_type, slot_start, units
        )
        return False

    async def release(self, partner_id: str, service_type: str, slot_start: datetime, units: int = 1) -> bool:
        """Give `units` back, clamped at zero. False when the slot does not exist."""

        if units <= 0:
            raise BookingValidationError("units must be positive")
        with self.session_factory() as db:
            result = db.execute(
                update(CapacitySlot)
                .where(*self._slot_filter(partner_id, service_type, slot_start))
                .values(
                    reserved_units=case(
                        (CapacitySlot.reserved_units - units < 0, 0),
                        else_=CapacitySlot.reserved_units - units,
                    )
                )
            )
            db.commit()
        if result.rowcount != 1:
            logger.warning(
                "capacity_release_missing partner_id=%s service_type=%s slot_start=%s", partner_id, service_type, slot_start
            )
            return False
        capacity_reservations_total.labels(service_type=service_type, result="released").inc()
        return True
