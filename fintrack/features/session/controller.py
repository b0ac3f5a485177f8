"""
Session Lifecycle Controller.

One controller per authenticated session. It owns the cached entitlement
(the only writer of it), listens for remote Entitlement Record changes,
re-evaluates expiration on a timer and decides between staying active,
prompting renewal, surfacing a payment confirmation or forcing sign-out.

States: SIGNED_OUT -> ACTIVE <-> WARNING_WINDOW -> EXPIRED -> SIGNED_OUT

Two event sources feed the state machine:
- the poll task (every ACCESS_POLL_INTERVAL_SECONDS) which only reads the store
- the change subscription, pushed by the store after each committed write

Every sign-in/sign-out bumps the session epoch; a callback or fetch started
under an older epoch is discarded. Record updates carry a monotonic revision;
anything older than the last applied revision is discarded too.
"""
import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo

from fintrack.core.config import settings
from fintrack.core.errors import AccessExpiredError, AuthError, ProfileNotFoundError, StoreUnavailableError
from fintrack.core.logging import log_event
from fintrack.features.auth.provider import AuthProvider, verify_admin_credentials
from fintrack.features.entitlements.duration import (
    TimeLeft,
    describe_time_left,
    display_days_remaining,
    expiration_of,
    is_expired,
    status_tier,
    time_left,
)
from fintrack.features.entitlements.hub import Subscription
from fintrack.features.entitlements.store import ProfileStore
from fintrack.features.session import renewal
from fintrack.features.session.local_store import (
    CACHED_ENTITLEMENT_KEY,
    LAST_RENEWAL_PROMPT_KEY,
    LOGIN_NOTICE_KEY,
    LocalStore,
    MemoryLocalStore,
)
from fintrack.models.entitlement import EntitlementRecord, ProfileChange
from fintrack.models.session import (
    AdminPrincipal,
    PaymentConfirmation,
    Principal,
    SessionSnapshot,
    SessionState,
    SignOutReason,
    TimeLeftView,
    UserPrincipal,
)

logger = logging.getLogger(__name__)

LOGIN_NOTICE_EXPIRED = "expired"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionController:
    def __init__(
        self,
        store: ProfileStore,
        auth: AuthProvider,
        local_store: Optional[LocalStore] = None,
        *,
        settings_obj=None,
        clock: Optional[Callable[[], datetime]] = None,
        poll: bool = True,
        session_id: Optional[str] = None,
        user_store: Optional[Callable[[str], LocalStore]] = None,
    ):
        cfg = settings_obj or settings
        self.store = store
        self.auth = auth
        self.local = local_store if local_store is not None else MemoryLocalStore()
        self._user_store = user_store
        self.session_id = session_id or uuid4().hex
        self._settings = cfg
        self._clock = clock or _utc_now
        self._poll_enabled = poll
        self._poll_interval = float(cfg.ACCESS_POLL_INTERVAL_SECONDS)
        self._warning_days = int(cfg.ACCESS_WARNING_WINDOW_DAYS)
        self._max_failures = int(cfg.ACCESS_MAX_POLL_FAILURES)
        self._expired_grace = timedelta(seconds=int(cfg.ACCESS_EXPIRED_SIGNOUT_GRACE_SECONDS))
        self._tz = ZoneInfo(cfg.ACCESS_TIMEZONE)

        self._state = SessionState.SIGNED_OUT
        self._principal: Optional[Principal] = None
        self._epoch = 0
        self._last_revision = -1
        self._subscription: Optional[Subscription] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._consecutive_failures = 0
        self._expired_since: Optional[datetime] = None
        self._pending_confirmation: Optional[PaymentConfirmation] = None
        self._sign_out_reason: Optional[SignOutReason] = None
        self.connection_degraded = False

    # Accessors --------------------------------------------------------
    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def principal(self) -> Optional[Principal]:
        return self._principal

    @property
    def entitlement(self) -> Optional[EntitlementRecord]:
        if isinstance(self._principal, UserPrincipal):
            return self._principal.entitlement
        return None

    @property
    def sign_out_reason(self) -> Optional[SignOutReason]:
        return self._sign_out_reason

    @property
    def should_prompt_renewal(self) -> bool:
        return renewal.should_prompt_renewal(self._state)

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # Sign-in / sign-out -----------------------------------------------
    async def sign_in(self, username: str, password: str) -> SessionSnapshot:
        """Authenticate, load the Entitlement Record and enter a signed-in state.

        Raises AuthError (session stays signed out) for bad credentials, a
        missing profile, expired access or a sign-in superseded by another one.
        """
        if self._principal is not None:
            await self.sign_out()
        self._epoch += 1
        epoch = self._epoch

        user_id = await self.auth.sign_in(username, password)
        if epoch != self._epoch:
            await self.auth.sign_out(user_id)
            raise AuthError("Sign-in was superseded", code="sign_in_superseded")

        try:
            record = await self.store.get_entitlement(user_id)
        except ProfileNotFoundError:
            await self.auth.sign_out(user_id)
            self._log("error", "session.integrity_failure", user_id=user_id, reason="profile_missing")
            raise AuthError("No access profile exists for this account", code="profile_missing")
        except StoreUnavailableError:
            await self.auth.sign_out(user_id)
            raise

        if epoch != self._epoch:
            await self.auth.sign_out(user_id)
            raise AuthError("Sign-in was superseded", code="sign_in_superseded")

        now = self._now()
        if is_expired(record, now):
            await self.auth.sign_out(user_id)
            self.local.set(LOGIN_NOTICE_KEY, LOGIN_NOTICE_EXPIRED)
            self._log("info", "session.sign_in_refused", user_id=user_id, reason="expired")
            raise AccessExpiredError("Your access period has ended. Renew to continue.")

        self._principal = UserPrincipal(user_id=user_id, entitlement=record)
        self._last_revision = record.revision
        self._write_cache()
        self._sign_out_reason = None
        self.local.delete(LOGIN_NOTICE_KEY)
        self._subscription = self.store.subscribe(user_id, self._change_handler(epoch))
        self._settle(now)
        self._log("info", "session.signed_in", user_id=user_id)
        self.start()
        return self.snapshot(now)

    async def sign_in_admin(self, username: str, password: str) -> SessionSnapshot:
        """Admin pseudo-session: no auth provider, no polling, no subscription."""
        if not verify_admin_credentials(username, password, self._settings):
            raise AuthError("Invalid username or password", code="invalid_credentials")
        if self._principal is not None:
            await self.sign_out()
        self._epoch += 1
        self._principal = AdminPrincipal(username=username)
        self._sign_out_reason = None
        self._write_cache()
        self._set_state(SessionState.ACTIVE)
        self._log("info", "session.admin_signed_in")
        return self.snapshot()

    async def sign_out(self, reason: SignOutReason = SignOutReason.USER) -> None:
        """Clear local state first, then invalidate the remote session (users only)."""
        principal = self._principal
        self._epoch += 1
        self._teardown()
        self.local.delete(CACHED_ENTITLEMENT_KEY)
        self._principal = None
        self._last_revision = -1
        self._consecutive_failures = 0
        self.connection_degraded = False
        self._expired_since = None
        self._pending_confirmation = None
        if principal is None:
            return

        self._sign_out_reason = reason
        if reason is SignOutReason.EXPIRED:
            self.local.set(LOGIN_NOTICE_KEY, LOGIN_NOTICE_EXPIRED)
        self._set_state(SessionState.SIGNED_OUT)
        if isinstance(principal, UserPrincipal):
            await self.auth.sign_out(principal.user_id)
            self._log("info", "session.signed_out", user_id=principal.user_id, reason=reason.value)
        else:
            self._log("info", "session.signed_out", reason=reason.value)

    # Periodic re-evaluation ---------------------------------------------
    async def evaluate(self, now: Optional[datetime] = None) -> SessionState:
        """One poll tick: refetch the record, then re-derive the state from it."""
        principal = self._principal
        if not isinstance(principal, UserPrincipal):
            return self._state
        epoch = self._epoch

        try:
            record = await self.store.get_entitlement(principal.user_id)
        except ProfileNotFoundError:
            if epoch != self._epoch:
                return self._state
            self._log("warning", "session.profile_missing", user_id=principal.user_id)
            await self.sign_out(SignOutReason.ACCOUNT_REMOVED)
            return self._state
        except StoreUnavailableError as exc:
            if epoch != self._epoch:
                return self._state
            self._consecutive_failures += 1
            if self._consecutive_failures >= self._max_failures:
                self.connection_degraded = True
            self._log(
                "warning",
                "session.poll_failed",
                user_id=principal.user_id,
                error_code=exc.code,
                extra={"consecutive_failures": self._consecutive_failures},
            )
            return self._state

        if epoch != self._epoch:
            self._log("debug", "session.stale_fetch_discarded", user_id=principal.user_id)
            return self._state

        self._consecutive_failures = 0
        self.connection_degraded = False
        self._apply_record(record)
        current = self._now(now)
        self._settle(current)
        await self._enforce(current)
        return self._state

    async def handle_remote_change(self, change: ProfileChange, epoch: Optional[int] = None) -> None:
        """Apply a pushed change; stale or out-of-order pushes are dropped."""
        principal = self._principal
        if epoch is not None and epoch != self._epoch:
            self._log("debug", "session.stale_change_discarded", user_id=change.user_id)
            return
        if not isinstance(principal, UserPrincipal) or change.user_id != principal.user_id:
            return
        if change.revision <= self._last_revision:
            self._log(
                "debug",
                "session.out_of_order_change_discarded",
                user_id=change.user_id,
                extra={"revision": change.revision, "last_revision": self._last_revision},
            )
            return

        if change.deleted or change.record is None:
            self._log("warning", "session.account_removed", user_id=change.user_id)
            await self.sign_out(SignOutReason.ACCOUNT_REMOVED)
            return

        self._apply_record(change.record)
        now = self._now()
        self._settle(now)
        await self._enforce(now)

    def _change_handler(self, epoch: int):
        async def _on_change(change: ProfileChange) -> None:
            await self.handle_remote_change(change, epoch)

        return _on_change

    # Renewal prompt and payment confirmation --------------------------------
    def dismiss_renewal_prompt(self, now: Optional[datetime] = None) -> None:
        self._prompt_store().set(LAST_RENEWAL_PROMPT_KEY, self._today(self._now(now)).isoformat())
        if self._state is SessionState.WARNING_WINDOW:
            self._set_state(SessionState.ACTIVE)

    def consume_payment_confirmation(self) -> Optional[PaymentConfirmation]:
        confirmation, self._pending_confirmation = self._pending_confirmation, None
        return confirmation

    def pop_login_notice(self) -> Optional[str]:
        notice = self.local.get(LOGIN_NOTICE_KEY)
        if notice is not None:
            self.local.delete(LOGIN_NOTICE_KEY)
        return notice

    # Views ------------------------------------------------------------
    def time_left(self, now: Optional[datetime] = None) -> Optional[TimeLeft]:
        record = self.entitlement
        if record is None or record.is_exempt:
            return None
        return time_left(record.access_duration_seconds, record.granted_at, self._now(now))

    def snapshot(self, now: Optional[datetime] = None) -> SessionSnapshot:
        current = self._now(now)
        principal = self._principal
        view = None
        expires_at = None
        if isinstance(principal, UserPrincipal):
            record = principal.entitlement
            left = self.time_left(current)
            if left is not None:
                view = TimeLeftView(
                    days=left.days,
                    hours=left.hours,
                    minutes=left.minutes,
                    display_days=display_days_remaining(record.access_duration_seconds, record.granted_at, current),
                    label=describe_time_left(left),
                    tier=status_tier(left.days),
                )
                expires_at = expiration_of(record)
        return SessionSnapshot(
            state=self._state,
            principal=principal.kind if principal else None,
            user_id=principal.user_id if isinstance(principal, UserPrincipal) else None,
            username=(
                principal.username
                if isinstance(principal, AdminPrincipal)
                else principal.entitlement.username if principal else None
            ),
            time_left=view,
            expires_at=expires_at,
            should_prompt_renewal=self.should_prompt_renewal,
            payment_confirmation_pending=self._pending_confirmation is not None,
            connection_degraded=self.connection_degraded,
            sign_out_reason=self._sign_out_reason,
        )

    # Poll task ----------------------------------------------------------
    def start(self) -> None:
        if not self._poll_enabled or self.polling:
            return
        if not isinstance(self._principal, UserPrincipal):
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop(self._epoch))

    async def stop(self) -> None:
        task = self._poll_task
        self._poll_task = None
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        """Tear down timers and the subscription; cached local state is kept."""
        self._epoch += 1
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        await self.stop()

    async def _poll_loop(self, epoch: int) -> None:
        while epoch == self._epoch:
            await asyncio.sleep(self._poll_interval)
            if epoch != self._epoch:
                break
            try:
                await self.evaluate()
            except Exception:
                logger.error("[session] poll tick failed", exc_info=True, extra={"session_id": self.session_id})

    # Internal helpers -------------------------------------------------
    def _teardown(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        task = self._poll_task
        self._poll_task = None
        # A sign-out forced from inside the poll tick ends the loop via the epoch check
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _apply_record(self, record: EntitlementRecord) -> bool:
        principal = self._principal
        if not isinstance(principal, UserPrincipal):
            return False
        if record.revision < self._last_revision:
            self._log(
                "debug",
                "session.stale_record_discarded",
                user_id=record.user_id,
                extra={"revision": record.revision, "last_revision": self._last_revision},
            )
            return False
        if record.revision == self._last_revision:
            return False

        previous = principal.entitlement
        self._principal = UserPrincipal(user_id=principal.user_id, entitlement=record)
        self._last_revision = record.revision
        self._write_cache()
        if self._is_renewal(previous, record):
            expires_at = expiration_of(record)
            self._pending_confirmation = PaymentConfirmation(
                user_id=record.user_id,
                access_duration_seconds=record.access_duration_seconds,
                previous_duration_seconds=previous.access_duration_seconds,
                expires_at=expires_at,
                days_remaining=display_days_remaining(record.access_duration_seconds, record.granted_at, self._now()),
            )
            self._log("info", "session.renewal_confirmed", user_id=record.user_id)
        return True

    @staticmethod
    def _is_renewal(previous: EntitlementRecord, current: EntitlementRecord) -> bool:
        # Re-saving the same duration is not a renewal
        if current.access_duration_seconds is None:
            return False
        if current.access_duration_seconds == previous.access_duration_seconds:
            return False
        new_expiration = expiration_of(current)
        old_expiration = expiration_of(previous)
        if new_expiration is None:
            return False
        return old_expiration is None or new_expiration > old_expiration

    def _settle(self, now: datetime) -> None:
        """Derive the signed-in state from the cached record alone."""
        principal = self._principal
        if principal is None:
            return
        if isinstance(principal, AdminPrincipal) or principal.entitlement.is_exempt:
            self._expired_since = None
            self._set_state(SessionState.ACTIVE)
            return

        record = principal.entitlement
        if is_expired(record, now):
            if self._expired_since is None:
                self._expired_since = now
            self._set_state(SessionState.EXPIRED)
            return

        self._expired_since = None
        left = time_left(record.access_duration_seconds, record.granted_at, now)
        last_prompted = self._prompt_store().get(LAST_RENEWAL_PROMPT_KEY)
        if renewal.in_warning_window(left.days, self._warning_days) and renewal.prompt_allowed_today(
            last_prompted, self._today(now)
        ):
            self._set_state(SessionState.WARNING_WINDOW)
        else:
            self._set_state(SessionState.ACTIVE)

    async def _enforce(self, now: datetime) -> None:
        if self._state is not SessionState.EXPIRED or self._expired_since is None:
            return
        if now - self._expired_since >= self._expired_grace:
            await self.sign_out(SignOutReason.EXPIRED)

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        self._log("info", "session.transition", extra={"from": previous.value, "state": state.value})

    def _write_cache(self) -> None:
        principal = self._principal
        if isinstance(principal, UserPrincipal):
            value = {"kind": "user", "entitlement": principal.entitlement.model_dump(mode="json")}
        elif isinstance(principal, AdminPrincipal):
            value = {"kind": "admin", "username": principal.username}
        else:
            return
        self.local.set(CACHED_ENTITLEMENT_KEY, value)

    def _prompt_store(self) -> LocalStore:
        """Per-user store for the prompt debounce date; it outlives this session."""
        principal = self._principal
        if self._user_store is not None and isinstance(principal, UserPrincipal):
            return self._user_store(principal.user_id)
        return self.local

    def _now(self, now: Optional[datetime] = None) -> datetime:
        current = now or self._clock()
        if current.tzinfo is None:
            return current.replace(tzinfo=timezone.utc)
        return current

    def _today(self, now: datetime) -> date:
        return now.astimezone(self._tz).date()

    def _log(
        self,
        level: str,
        msg: str,
        *,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
        error_code: Optional[str] = None,
        extra: Optional[dict] = None,
    ) -> None:
        payload = dict(extra or {})
        if reason:
            payload["reason"] = reason
        if user_id is None and isinstance(self._principal, UserPrincipal):
            user_id = self._principal.user_id
        log_event(
            level,
            msg,
            user_id=user_id,
            session_id=self.session_id,
            event_type="session",
            error_code=error_code,
            extra=payload,
        )
