import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Callable, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.orm import Session

from activation_engine import epoch_millis
from config import configure_logging, settings
from database import ClientBase, SystemConfig, VerificationAttempt, create_session_factory
from exceptions import ClientError, LicenseLockedError, ProtocolError
from hardware_fingerprint import new_device_id

logger = logging.getLogger(__name__)

DOMAIN_OUTCOMES = {"invalid", "invalid_device", "expired"}
TRANSIENT_STATUSES = {"malformed_request", "error"}
KNOWN_STATUSES = DOMAIN_OUTCOMES | TRANSIENT_STATUSES | {"valid"}


class LicenseStatus(str, Enum):
    UNLICENSED = "unlicensed"            # no key entered yet
    PENDING = "pending"                  # key held, waiting for a verdict
    ACTIVE = "active"
    EXPIRED_LOCALLY = "expired_locally"  # countdown hit zero, server not asked yet
    LOCKED = "locked"                    # server returned a domain outcome


@dataclass(frozen=True)
class ServerVerdict:
    status: str
    expires_at: Optional[int] = None
    server_time: Optional[int] = None


@dataclass
class LicenseState:
    """The one value shared by the poll job and the countdown job."""
    status: LicenseStatus = LicenseStatus.UNLICENSED
    license_key: Optional[str] = None
    expires_at: Optional[int] = None
    remaining_ms: Optional[int] = None
    lock_reason: Optional[str] = None
    last_error: Optional[str] = None
    last_verified_at: Optional[datetime] = field(default=None)


def open_client_session(database_url: str = None) -> Session:
    factory = create_session_factory(database_url or settings.CLIENT_DATABASE_URL,
                                     metadata_base=ClientBase)
    return factory()


def format_remaining(remaining_ms: Optional[int]) -> str:
    if remaining_ms is None:
        return ""
    if remaining_ms <= 0:
        return "Expired"
    seconds = remaining_ms // 1000
    return f"{seconds // 3600:02d}h {(seconds % 3600) // 60:02d}m {seconds % 60:02d}s"


class ClientSyncAgent:
    """
    Keeps the application's license gate in step with the authority.

    Two independent periodic jobs: a poll that asks the server for its
    verdict, and a short countdown tick that only reads the authoritative
    expiry. Server verdicts always override the local countdown.
    """

    def __init__(
        self,
        db: Session,
        api_url: str = None,
        transport: httpx.AsyncBaseTransport = None,
        clock: Callable[[], int] = epoch_millis,
        monotonic: Callable[[], float] = time.monotonic,
        on_lockout: Callable[[str], None] = None,
        on_unlock: Callable[[], None] = None,
        on_tick: Callable[[int], None] = None,
    ):
        self.db = db
        self.api_url = (api_url or settings.LICENSE_API_URL).rstrip("/")
        self.transport = transport
        self.clock = clock
        self.monotonic = monotonic
        self.on_lockout = on_lockout
        self.on_unlock = on_unlock
        self.on_tick = on_tick

        self.device_id = self._get_or_create_device_id()
        self.scheduler = AsyncIOScheduler()
        self._deadline: Optional[float] = None
        self.state = self._restore_state()

    # ---------------------------
    # Local persistence
    # ---------------------------
    def _get_config(self, key: str) -> Optional[str]:
        config = self.db.query(SystemConfig).filter(SystemConfig.key == key).first()
        return config.value if config else None

    def _set_config(self, key: str, value: Optional[str]):
        config = self.db.query(SystemConfig).filter(SystemConfig.key == key).first()
        if value is None:
            if config:
                self.db.delete(config)
        elif config:
            config.value = value
        else:
            self.db.add(SystemConfig(key=key, value=value))
        self.db.commit()

    def _get_or_create_device_id(self) -> str:
        """Generated once per installation, then always read back."""
        existing = self._get_config("device_id")
        if existing:
            return existing
        device_id = new_device_id()
        self._set_config("device_id", device_id)
        logger.info("Generated device identifier %s", device_id)
        return device_id

    def _restore_state(self) -> LicenseState:
        license_key = self._get_config("license_key")
        if not license_key:
            return LicenseState()

        state = LicenseState(status=LicenseStatus.PENDING, license_key=license_key)
        stored_expiry = self._get_config("expires_at")
        if stored_expiry and int(stored_expiry) >= self.clock():
            # Last known server verdict still holds until the first poll says otherwise.
            state.status = LicenseStatus.ACTIVE
            state.expires_at = int(stored_expiry)
            self._deadline = self.monotonic() + (state.expires_at - self.clock()) / 1000
            state.remaining_ms = state.expires_at - self.clock()
        return state

    def _log_verification_attempt(self, license_key: str, result: str, error_message: Optional[str]):
        self.db.add(VerificationAttempt(
            license_key=license_key,
            result=result,
            error_message=error_message,
            device_id=self.device_id,
        ))
        self.db.commit()

    # ---------------------------
    # Server round trip
    # ---------------------------
    async def check_license(self, license_key: str) -> ServerVerdict:
        """
        Ask the authority about `license_key` for this device.

        Network failures propagate as httpx.HTTPError; anything we cannot
        decode raises ProtocolError.
        """
        async with httpx.AsyncClient(timeout=settings.LICENSE_API_TIMEOUT,
                                     transport=self.transport) as client:
            response = await client.post(
                f"{self.api_url}/verify",
                json={"key": license_key, "deviceId": self.device_id},
                headers={"Content-Type": "application/json"},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(f"Undecodable response (HTTP {response.status_code})") from e

        status = data.get("status") if isinstance(data, dict) else None
        if status not in KNOWN_STATUSES:
            raise ProtocolError(f"Unexpected status {status!r} (HTTP {response.status_code})")

        expires_at = data.get("expiresAt")
        if status == "valid":
            if isinstance(expires_at, bool) or not isinstance(expires_at, int):
                raise ProtocolError("Valid response without an integer expiresAt")
        else:
            expires_at = None

        return ServerVerdict(status=status, expires_at=expires_at,
                             server_time=self._server_time(response))

    @staticmethod
    def _server_time(response: httpx.Response) -> Optional[int]:
        header = response.headers.get("date")
        if not header:
            return None
        try:
            return int(parsedate_to_datetime(header).timestamp() * 1000)
        except (TypeError, ValueError):
            return None

    async def poll(self) -> LicenseState:
        """
        One verification round trip, applied to the shared state.

        A locked key is final for this device; nothing is sent until
        enter_key() replaces it.
        """
        license_key = self.state.license_key
        if not license_key or self.state.status is LicenseStatus.LOCKED:
            return self.state

        try:
            verdict = await self.check_license(license_key)
        except httpx.HTTPError as e:
            self._record_transient(license_key, "offline", str(e))
            return self.state
        except ProtocolError as e:
            self._record_transient(license_key, "protocol_error", str(e))
            return self.state

        if license_key != self.state.license_key:
            # A new key was entered while this request was in flight.
            return self.state

        self.state.last_verified_at = datetime.utcnow()
        if verdict.status == "valid":
            self._log_verification_attempt(license_key, verdict.status, None)
            self._apply_valid(verdict)
        elif verdict.status in DOMAIN_OUTCOMES:
            self._log_verification_attempt(license_key, verdict.status, None)
            self._lock(verdict.status)
        else:
            self._record_transient(license_key, verdict.status, "Server reported " + verdict.status)
        return self.state

    def _record_transient(self, license_key: str, result: str, message: str):
        logger.warning("License check failed (%s): %s; will retry", result, message)
        self.state.last_error = message
        self._log_verification_attempt(license_key, result, message)

    def _apply_valid(self, verdict: ServerVerdict):
        server_now = verdict.server_time if verdict.server_time is not None else self.clock()
        deadline = self.monotonic() + (verdict.expires_at - server_now) / 1000

        if (self._deadline is None or verdict.expires_at != self.state.expires_at
                or self.state.status is not LicenseStatus.ACTIVE):
            self._deadline = deadline
        else:
            # Same expiry: never let the displayed countdown jump back up.
            self._deadline = min(self._deadline, deadline)

        previous = self.state.status
        self.state.status = LicenseStatus.ACTIVE
        self.state.expires_at = verdict.expires_at
        self.state.lock_reason = None
        self.state.last_error = None
        self._set_config("expires_at", str(verdict.expires_at))

        if previous is not LicenseStatus.ACTIVE:
            logger.info("License active until %s", verdict.expires_at)
            if self.on_unlock:
                self.on_unlock()
        self.tick()

    def _lock(self, reason: str):
        already_notified = (
            self.state.status in (LicenseStatus.LOCKED, LicenseStatus.EXPIRED_LOCALLY)
            and self.state.lock_reason == reason
        )
        logger.warning("License locked: %s", reason)
        self.state.status = LicenseStatus.LOCKED
        self.state.lock_reason = reason
        self.state.expires_at = None
        self.state.remaining_ms = None
        self._deadline = None
        self._set_config("expires_at", None)
        if self.on_lockout and not already_notified:
            self.on_lockout(reason)

    # ---------------------------
    # Local countdown
    # ---------------------------
    def tick(self) -> Optional[int]:
        """Refresh the countdown from the local clock; no network."""
        if self.state.status is not LicenseStatus.ACTIVE or self._deadline is None:
            return self.state.remaining_ms

        remaining = max(0, int((self._deadline - self.monotonic()) * 1000))
        self.state.remaining_ms = remaining
        if self.on_tick:
            self.on_tick(remaining)

        if remaining == 0:
            logger.info("Local countdown reached zero; waiting for server verdict")
            self.state.status = LicenseStatus.EXPIRED_LOCALLY
            self.state.lock_reason = "expired"
            if self.on_lockout:
                self.on_lockout("expired")
        return remaining

    def remaining_time_string(self) -> str:
        return format_remaining(self.state.remaining_ms)

    # ---------------------------
    # Application gate
    # ---------------------------
    @property
    def is_usable(self) -> bool:
        return self.state.status is LicenseStatus.ACTIVE

    def require_license(self):
        """Raise LicenseLockedError unless protected actions are allowed."""
        if not self.is_usable:
            raise LicenseLockedError(self.state.lock_reason or self.state.status.value)

    async def enter_key(self, license_key: str) -> LicenseState:
        """Replace the held key (re-entry prompt) and verify it right away."""
        license_key = (license_key or "").strip()
        if not license_key:
            raise ClientError("License key is required")

        self._set_config("license_key", license_key)
        self._set_config("expires_at", None)
        self._deadline = None
        self.state = LicenseState(status=LicenseStatus.PENDING, license_key=license_key)
        return await self.poll()

    # ---------------------------
    # Scheduling
    # ---------------------------
    async def _tick_job(self):
        self.tick()

    async def start(self):
        """Poll now and then every POLL_INTERVAL_SECONDS; tick every COUNTDOWN_TICK_SECONDS."""
        if self.scheduler.running:
            return
        self.scheduler.add_job(
            self.poll,
            'interval',
            seconds=settings.POLL_INTERVAL_SECONDS,
            next_run_time=datetime.now(),
            id='license_poll',
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self._tick_job,
            'interval',
            seconds=settings.COUNTDOWN_TICK_SECONDS,
            id='license_countdown',
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()

    async def stop(self):
        if self.scheduler.running:
            self.scheduler.remove_all_jobs()
            self.scheduler.shutdown(wait=False)
            # AsyncIOScheduler runs shutdown on the loop's next iteration.
            await asyncio.sleep(0)


async def _run(license_key: Optional[str]):
    agent = ClientSyncAgent(
        open_client_session(),
        on_lockout=lambda reason: print(f"License locked ({reason}). Please enter a new key."),
        on_tick=lambda remaining: print(f"Expires in: {format_remaining(remaining)}", end="\r"),
    )
    if license_key:
        await agent.enter_key(license_key)
    await agent.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await agent.stop()


if __name__ == "__main__":
    import sys
    configure_logging()
    try:
        asyncio.run(_run(sys.argv[1] if len(sys.argv) > 1 else None))
    except KeyboardInterrupt:
        pass
