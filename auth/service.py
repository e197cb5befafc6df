"""
auth/service.py -- AuthService, the authentication orchestrator.

Each public method is one short use case over the collaborators passed to the
constructor: the credential store, the token service, the login throttle and
the recovery flow. Nothing is constructed here; api/main.py wires everything
up in the application lifespan and stores the instance on app.state.

Concurrency:
  Methods are async. Store calls, throttle updates and bcrypt run in the
  starlette threadpool (run_in_threadpool), so a slow database or a deliberate
  bcrypt work factor never blocks the event loop. Token signing and
  verification are cheap and run inline.

Account enumeration:
  login() always runs a bcrypt comparison, against a dummy hash when the email
  is unknown, and reports INVALID_CREDENTIALS for both cases. Inactive and
  deleted states are only revealed to a caller who supplied the right password.
  forgot_password() returns the same message whether or not a token was issued,
  and never waits on the notifier.

Mail:
  Recovery and activation mail is handed to a BackgroundTasks object when the
  route supplies one, and otherwise to a task tracked on the service.
  wait_for_deliveries() awaits the latter.
"""

from __future__ import annotations

import asyncio
import logging

from starlette.background import BackgroundTasks
from starlette.concurrency import run_in_threadpool

from auth.errors import (
    AuthenticationRequired,
    InvalidCredentials,
    InvalidRefreshToken,
    UserAlreadyActivated,
    UserInactive,
    UserNotFound,
)
from auth.models import ForgotPasswordResult, LoginResult, Principal, RecoveryToken, SessionToken, TokenPair, utcnow
from auth.notifier import redact_email
from auth.recovery import RecoveryFlow
from auth.store import CredentialStore, new_id
from auth.throttle import LoginThrottle
from auth.tokens import TokenService, dummy_hash, hash_password, verify_password

logger = logging.getLogger("tenantgate.auth")

FORGOT_PASSWORD_MESSAGE = "If the email exists, a reset link has been sent."


class AuthService:
    """Login, session renewal, logout, credential recovery and request authentication.

    Usage:
        service = AuthService(store, tokens, throttle, recovery, bcrypt_rounds=12)
        result = await service.login("alice@example.com", "secret")
        principal = await service.authenticate(result.tokens.access_token)
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        throttle: LoginThrottle,
        recovery: RecoveryFlow,
        *,
        bcrypt_rounds: int = 12,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.throttle = throttle
        self.recovery = recovery
        self.bcrypt_rounds = bcrypt_rounds
        self._deliveries: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> LoginResult:
        """Check the password, then the account state, then open a session.

        A soft-deleted principal is reported as USER_NOT_FOUND even though soft
        delete also clears is_active: the deleted check runs first so a removed
        account is not presented as merely disabled.
        """
        key = email.strip().lower()
        # Throttle first: a blocked identifier never reaches the store.
        await run_in_threadpool(self.throttle.check, key)

        principal = await run_in_threadpool(self.store.get_user_by_email, key)
        hashed = principal.hashed_password if principal is not None else dummy_hash()
        password_ok = await run_in_threadpool(verify_password, password, hashed)

        if principal is None or not password_ok:
            await run_in_threadpool(self.throttle.record_failure, key)
            logger.info("Failed login for %s", redact_email(key))
            raise InvalidCredentials()
        if principal.is_deleted:
            raise UserNotFound()
        if not principal.is_active:
            raise UserInactive()

        await run_in_threadpool(self.throttle.record_success, key)
        pair = await run_in_threadpool(self._start_session, principal)
        await run_in_threadpool(self.store.update_last_login, principal.id)
        logger.info("Login succeeded for principal %s", principal.id)
        return LoginResult(principal=principal, tokens=pair, first_login=principal.first_login)

    def _start_session(self, principal: Principal) -> TokenPair:
        """Issue a pair and make its refresh token the principal's only live record."""
        pair = self.tokens.issue(principal)
        self.store.delete_refresh_tokens_for_user(principal.id)
        self.store.create_refresh_token(
            SessionToken(
                id=new_id(),
                token=pair.refresh_token,
                user_id=principal.id,
                created_at=utcnow(),
                expires_in=self.tokens.refresh_expire_seconds,
            )
        )
        return pair

    async def refresh(self, refresh_token: str) -> TokenPair:
        payload = self.tokens.verify_refresh(refresh_token)

        record = await run_in_threadpool(self.store.get_refresh_token, refresh_token)
        if record is None or record.user_id != payload.principal_id or not record.is_valid():
            raise InvalidRefreshToken()

        principal = await run_in_threadpool(self.store.get_user, payload.principal_id)
        if principal is None or principal.is_deleted or not principal.is_active:
            raise UserNotFound()

        pair = self.tokens.issue(principal)
        # Rewrite in place: the lineage keeps the created_at of the login that started it.
        rotated = await run_in_threadpool(self.store.update_refresh_token, record.id, refresh_token, pair.refresh_token)
        if not rotated:
            # Another refresh presenting the same token got there first.
            raise InvalidRefreshToken()
        return pair

    async def logout(self, principal_id: str) -> int:
        """Revoke every session of the principal. Returns the number of records removed."""
        removed = await run_in_threadpool(self.store.delete_refresh_tokens_for_user, principal_id)
        logger.info("Logout for principal %s revoked %d session(s)", principal_id, removed)
        return removed

    async def authenticate(self, access_token: str) -> Principal:
        """Resolve a bearer access token to a live principal."""
        payload = self.tokens.verify_access(access_token)
        principal = await run_in_threadpool(self.store.get_user, payload.principal_id)
        if principal is None or principal.is_deleted or not principal.is_active:
            raise AuthenticationRequired("User not found or inactive.")
        return principal

    # ------------------------------------------------------------------
    # Credential recovery
    # ------------------------------------------------------------------

    async def forgot_password(self, email: str, background: BackgroundTasks | None = None) -> ForgotPasswordResult:
        """Issue a reset token for a live principal and schedule the mail.

        The request path only does the token bookkeeping. The notifier runs
        after the response (background) or on a tracked task, so a slow relay
        cannot make a known address answer later than an unknown one.
        """
        principal = await run_in_threadpool(self.store.get_user_by_email, email.strip().lower())
        if principal is None or principal.is_deleted or not principal.is_active:
            return ForgotPasswordResult(message=FORGOT_PASSWORD_MESSAGE)

        record = await run_in_threadpool(self.recovery.issue, principal)
        self._hand_off(background, self.recovery.notify_reset, principal, record)
        return ForgotPasswordResult(message=FORGOT_PASSWORD_MESSAGE, recovery=record)

    async def reset_password(self, token: str, new_password: str) -> None:
        record = await run_in_threadpool(self.recovery.consume, token)
        hashed = await run_in_threadpool(hash_password, new_password, self.bcrypt_rounds)
        await run_in_threadpool(self.store.update_password, record.user_id, hashed)
        revoked = await run_in_threadpool(self.store.delete_refresh_tokens_for_user, record.user_id)
        logger.info("Password reset for principal %s, %d session(s) revoked", record.user_id, revoked)

    async def first_login(self, token: str, new_password: str) -> LoginResult:
        record = await run_in_threadpool(self.recovery.consume, token)
        principal = await run_in_threadpool(self.store.get_user, record.user_id)
        if principal is None or principal.is_deleted or not principal.is_active:
            raise UserNotFound()
        if not principal.first_login:
            raise UserAlreadyActivated()

        hashed = await run_in_threadpool(hash_password, new_password, self.bcrypt_rounds)
        await run_in_threadpool(self.store.update_password, principal.id, hashed)
        await run_in_threadpool(self.store.complete_first_login, principal.id)

        activated = await run_in_threadpool(self.store.get_user, principal.id)
        pair = await run_in_threadpool(self._start_session, activated)
        await run_in_threadpool(self.store.update_last_login, principal.id)
        logger.info("Principal %s activated", principal.id)
        return LoginResult(principal=activated, tokens=pair, first_login=False)

    async def send_activation(self, principal: Principal, background: BackgroundTasks | None = None) -> RecoveryToken:
        """Mint an activation token for a newly created principal and schedule the mail."""
        record = await run_in_threadpool(self.recovery.issue, principal)
        self._hand_off(background, self.recovery.notify_activation, principal, record)
        return record

    # ------------------------------------------------------------------
    # Mail hand-off
    # ------------------------------------------------------------------

    def _hand_off(self, background: BackgroundTasks | None, send, principal: Principal, record: RecoveryToken) -> None:
        # send never raises: RecoveryFlow logs a failed Delivery and returns it.
        if background is not None:
            background.add_task(send, principal, record)
            return
        task = asyncio.get_running_loop().create_task(run_in_threadpool(send, principal, record))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def wait_for_deliveries(self) -> None:
        """Wait for mail scheduled without a BackgroundTasks object."""
        if self._deliveries:
            await asyncio.gather(*self._deliveries)
