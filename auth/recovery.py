"""
auth/recovery.py -- Single-use recovery tokens for password reset and first-login activation.

A principal has at most one live recovery token. issue() hard-deletes any
earlier ones before minting a new token/code pair, so only the most recent
email works. consume() validates a token and claims it with a single DELETE:
of two concurrent callers presenting the same token, only the one whose delete
removed the row proceeds. A claimed token is gone even if the caller's update
then fails; the principal asks for a new one.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from urllib.parse import urlencode

from auth.errors import InvalidOrExpiredToken
from auth.models import DEFAULT_RECOVERY_MINUTES, Principal, RecoveryToken, utcnow
from auth.notifier import Delivery, Notifier, redact_email
from auth.store import CredentialStore, new_id
from auth.tokens import generate_recovery_code, generate_recovery_token

logger = logging.getLogger("tenantgate.auth.recovery")


class RecoveryFlow:
    """Issues and claims RecoveryToken records, and sends the mail that carries them.

    Synchronous like the stores it wraps; AuthService calls it through
    run_in_threadpool.
    """

    def __init__(
        self,
        store: CredentialStore,
        notifier: Notifier,
        frontend_url: str,
        expire_minutes: int = DEFAULT_RECOVERY_MINUTES,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.frontend_url = frontend_url.rstrip("/")
        self.expire = timedelta(minutes=expire_minutes)

    def issue(self, principal: Principal) -> RecoveryToken:
        self.store.delete_recovery_tokens_for_user(principal.id)
        now = utcnow()
        record = RecoveryToken(
            id=new_id(),
            token=generate_recovery_token(),
            code=generate_recovery_code(),
            user_id=principal.id,
            created_at=now,
            expires_at=now + self.expire,
        )
        self.store.create_recovery_token(record)
        return record

    def consume(self, token: str) -> RecoveryToken:
        """Claim the live record for token or raise InvalidOrExpiredToken."""
        record = self.store.get_recovery_token(token) if token else None
        if record is None or not record.is_valid_token(token):
            raise InvalidOrExpiredToken()
        if not self.store.delete_recovery_token(record.id):
            # Claimed by a concurrent caller between the read and the delete.
            raise InvalidOrExpiredToken()
        return record

    def reset_url(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password?{urlencode({'token': token})}"

    def activation_url(self, token: str) -> str:
        return f"{self.frontend_url}/first-login?{urlencode({'token': token})}"

    # ------------------------------------------------------------------
    # Best-effort notifications
    # ------------------------------------------------------------------

    def notify_reset(self, principal: Principal, record: RecoveryToken) -> Delivery:
        return self._deliver(
            "password reset",
            principal,
            lambda: self.notifier.send_password_reset(
                principal.email, principal.name, self.reset_url(record.token), record.code
            ),
        )

    def notify_activation(self, principal: Principal, record: RecoveryToken) -> Delivery:
        return self._deliver(
            "activation",
            principal,
            lambda: self.notifier.send_activation(
                principal.email, principal.name, self.activation_url(record.token), record.code
            ),
        )

    @staticmethod
    def _deliver(kind: str, principal: Principal, send) -> Delivery:
        try:
            delivery = send()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Notifier raised while sending %s mail to %s", kind, redact_email(principal.email))
            return Delivery(ok=False, error=type(exc).__name__)
        if not delivery.ok:
            logger.warning(
                "%s mail to %s not delivered: %s", kind.capitalize(), redact_email(principal.email), delivery.error
            )
        return delivery
