"""Short-lived, mutually exclusive holds on doctor time slots."""

import json
from datetime import UTC, datetime, timedelta
from uuid import uuid4
from zoneinfo import ZoneInfo

import redis
import structlog
from redis.client import Pipeline

from clinicflow.core.exceptions import ConflictException, SlotNoLongerAvailableException
from clinicflow.core.ports import Clock, utc_now
from clinicflow.schemas.availability import SlotHold

logger = structlog.get_logger(__name__)

HOLD_KEY_PREFIX = "slot_hold"
HOLD_SPAN_PREFIX = "slot_hold_span"
PAYMENT_KEY_PREFIX = "payment_hold"


def _decode(value: bytes | str | None) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class ReservationManager:
    """
    Grants at most one hold per (doctor, slot) using Redis ``SET NX``.

    An appointment longer than one slot holds every slot it covers, all under
    the same token, so two overlapping requests always compete for at least one
    common key. Acquisition never blocks: the caller either wins immediately or
    gets ``SlotNoLongerAvailableException`` and must re-query availability.
    Holds expire through the key TTL. The span of each hold is recorded under
    its token so it can be released as a whole.

    The same ``SET NX`` claim serializes payments of one appointment.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        hold_ttl_seconds: int = 300,
        slot_minutes: int = 30,
        clock: Clock = utc_now,
        timezone: str = "UTC",
        payment_ttl_seconds: int = 120,
    ):
        self.redis = redis_client
        self.hold_ttl_seconds = hold_ttl_seconds
        self.slot_minutes = slot_minutes
        self.payment_ttl_seconds = payment_ttl_seconds
        self._clock = clock
        self._tz = ZoneInfo(timezone)

    def slot_start(self, date_time: datetime) -> datetime:
        """Floor a datetime to the slot grid of the clinic's timezone, returned in UTC."""
        local = date_time.astimezone(self._tz)
        minutes = local.hour * 60 + local.minute
        floored = minutes - minutes % self.slot_minutes
        local = local.replace(hour=floored // 60, minute=floored % 60, second=0, microsecond=0)
        return local.astimezone(UTC)

    def hold_key(self, doctor_id: str, date_time: datetime) -> str:
        return f"{HOLD_KEY_PREFIX}:{doctor_id}:{self.slot_start(date_time).isoformat()}"

    def hold_keys(
        self, doctor_id: str, date_time: datetime, duration: int | None = None
    ) -> list[str]:
        """Keys of every slot touched by ``[date_time, date_time + duration)``."""
        end = date_time + timedelta(minutes=duration or self.slot_minutes)
        current = self.slot_start(date_time)
        keys = []
        while current < end:
            keys.append(self.hold_key(doctor_id, current))
            current += timedelta(minutes=self.slot_minutes)
        return keys

    def reserve_slot(
        self, doctor_id: str, date_time: datetime, duration: int | None = None
    ) -> SlotHold:
        """
        Atomically claim the slots of a requested appointment.

        Args:
            doctor_id: Doctor ID
            date_time: Requested start time
            duration: Requested length in minutes; defaults to one slot

        Returns:
            The hold with its token and expiry

        Raises:
            SlotNoLongerAvailableException: If someone else holds any of the slots
        """
        duration = duration or self.slot_minutes
        token = str(uuid4())
        acquired = []

        for key in self.hold_keys(doctor_id, date_time, duration):
            if not self.redis.set(key, token, nx=True, ex=self.hold_ttl_seconds):
                logger.info("slot_hold_rejected", doctor_id=doctor_id, slot=key)
                if acquired:
                    self._compare_and_delete(acquired, token)
                raise SlotNoLongerAvailableException("This time slot is currently being booked")
            acquired.append(key)

        self.redis.set(
            self.span_key(token),
            json.dumps(
                {
                    "doctor_id": doctor_id,
                    "date_time": date_time.astimezone(UTC).isoformat(),
                    "duration": duration,
                }
            ),
            ex=self.hold_ttl_seconds,
        )

        logger.info("slot_hold_acquired", doctor_id=doctor_id, slots=acquired, token=token[:8])
        return SlotHold(
            token=token,
            doctor_id=doctor_id,
            slot_start=self.slot_start(date_time),
            duration=duration,
            expires_at=self._clock() + timedelta(seconds=self.hold_ttl_seconds),
        )

    def is_held_by(
        self, doctor_id: str, date_time: datetime, token: str, duration: int | None = None
    ) -> bool:
        """True while ``token`` still owns every slot (not expired, not released)."""
        values = self.redis.mget(self.hold_keys(doctor_id, date_time, duration))
        return all(_decode(value) == token for value in values)

    def require_hold(
        self, doctor_id: str, date_time: datetime, token: str, duration: int | None = None
    ) -> None:
        """
        Raises:
            SlotNoLongerAvailableException: If the hold is missing, expired or foreign
        """
        if not token or not self.is_held_by(doctor_id, date_time, token, duration):
            raise SlotNoLongerAvailableException(
                "Slot reservation is missing or expired; check availability again"
            )

    def release(
        self, doctor_id: str, date_time: datetime, token: str, duration: int | None = None
    ) -> bool:
        """
        Drop the hold only where ``token`` still owns it (compare-and-delete).

        Returns:
            True if any slot was released
        """
        keys = self.hold_keys(doctor_id, date_time, duration)
        try:
            released = self._compare_and_delete(keys, token)
        except redis.RedisError as e:
            # The TTL still frees the slot
            logger.warning("slot_hold_release_failed", slots=keys, error=str(e))
            return False

        if released:
            logger.info("slot_hold_released", doctor_id=doctor_id, slots=keys)
        return released

    def span_key(self, token: str) -> str:
        return f"{HOLD_SPAN_PREFIX}:{token}"

    def release_hold(
        self, token: str, doctor_id: str, date_time: datetime, duration: int | None = None
    ) -> bool:
        """
        Release every slot reserved under ``token``.

        The span recorded at reservation time wins over the one passed in, so a
        booking shorter than its hold still frees the whole hold. The given span
        is used when the record has already expired.
        """
        try:
            raw = self.redis.get(self.span_key(token))
        except redis.RedisError as e:
            logger.warning("slot_hold_span_lookup_failed", error=str(e))
            raw = None

        if raw:
            span = json.loads(_decode(raw))
            doctor_id = span["doctor_id"]
            date_time = datetime.fromisoformat(span["date_time"])
            duration = span["duration"]

        released = self.release(doctor_id, date_time, token, duration)
        try:
            self.redis.delete(self.span_key(token))
        except redis.RedisError as e:
            logger.warning("slot_hold_span_release_failed", error=str(e))
        return released

    def hold_payment(self, appointment_id: str) -> str:
        """
        Claim the right to charge an appointment.

        Raises:
            ConflictException: If another payment for it is in progress
        """
        token = str(uuid4())
        key = f"{PAYMENT_KEY_PREFIX}:{appointment_id}"
        if not self.redis.set(key, token, nx=True, ex=self.payment_ttl_seconds):
            logger.info("payment_hold_rejected", appointment_id=appointment_id)
            raise ConflictException("A payment for this appointment is already in progress")
        return token

    def release_payment(self, appointment_id: str, token: str) -> None:
        key = f"{PAYMENT_KEY_PREFIX}:{appointment_id}"
        try:
            self._compare_and_delete([key], token)
        except redis.RedisError as e:
            logger.warning(
                "payment_hold_release_failed", appointment_id=appointment_id, error=str(e)
            )

    def _compare_and_delete(self, keys: list[str], token: str) -> bool:
        def _transaction(pipe: Pipeline) -> bool:
            owned = [key for key in keys if _decode(pipe.get(key)) == token]
            if not owned:
                return False
            pipe.multi()
            pipe.delete(*owned)
            return True

        return bool(self.redis.transaction(_transaction, *keys, value_from_callable=True))
