from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re
import sqlite3

from iom.domain.errors import UnauthorizedError, ValidationError
from iom.domain.models import Actor, User
from iom.services.concurrency import require_actor

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoginPolicy:
    min_pin_length: int = 8
    max_failed_attempts: int = 5
    lockout_seconds: int = 60


def _validate_secret_strength(secret: str, *, min_len: int) -> None:
    if len(secret) < min_len:
        raise ValidationError(f"PIN must have at least {min_len} characters.")
    if not re.search(r"[A-Za-z]", secret):
        raise ValidationError("PIN must include at least one letter.")
    if not re.search(r"\d", secret):
        raise ValidationError("PIN must include at least one number.")


def _utcnow() -> datetime:
    # users.locked_until is written by SQLite's datetime('now'), naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AuthService:
    def __init__(self, repo, policy: LoginPolicy | None = None):
        self.repo = repo
        self.policy = policy or LoginPolicy()

    def list_users(self) -> list[User]:
        return self.repo.list_users()

    def login(self, username: str, pin: str) -> Actor:
        username_clean = (username or "").strip()
        if not username_clean:
            raise UnauthorizedError("Username is required.")

        state = self.repo.get_user_security_state(username_clean)
        if state:
            _attempts, locked_until = state
            if locked_until:
                until = datetime.fromisoformat(locked_until)
                now = _utcnow()
                if now < until:
                    remaining = int((until - now).total_seconds())
                    raise UnauthorizedError(f"User is temporarily locked. Retry in {remaining}s.")

        user = self.repo.authenticate_user(username_clean, (pin or "").strip())
        if not user:
            attempts, locked_until = self.repo.record_login_failure(
                username_clean,
                self.policy.max_failed_attempts,
                self.policy.lockout_seconds,
            )
            log.warning("login_failed username=%s attempts=%s", username_clean, attempts)
            if locked_until is not None:
                raise UnauthorizedError("Too many failed attempts. User is temporarily locked.")
            raise UnauthorizedError("Invalid username or PIN.")

        self.repo.clear_login_guard(user.id)
        log.info("login_ok user_id=%s", user.id)
        return Actor(user_id=user.id, username=user.username)

    def create_user(self, actor: Actor | None, username: str, pin: str) -> int:
        """New users must change the PIN an administrator handed them."""
        actor = require_actor(actor)
        user = (username or "").strip()
        secret = (pin or "").strip()
        if not user:
            raise ValidationError("Username is required.")
        _validate_secret_strength(secret, min_len=self.policy.min_pin_length)

        try:
            uid = self.repo.create_user(user, secret, must_change_pin=1)
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Could not create user '{user}': {exc}") from exc
        log.info("user_created username=%s actor=%s", user, actor.user_id)
        return uid

    def change_my_pin(self, actor: Actor | None, current_pin: str, new_pin: str, confirm_pin: str) -> None:
        actor = require_actor(actor)
        current_secret = (current_pin or "").strip()
        new_secret = (new_pin or "").strip()
        confirm_secret = (confirm_pin or "").strip()

        if not current_secret:
            raise ValidationError("Current PIN is required.")
        _validate_secret_strength(new_secret, min_len=self.policy.min_pin_length)
        if new_secret != confirm_secret:
            raise ValidationError("PIN confirmation does not match.")
        if new_secret == current_secret:
            raise ValidationError("New PIN must be different from the current PIN.")

        changed = self.repo.change_user_pin(actor.user_id, current_secret, new_secret)
        if not changed:
            raise UnauthorizedError("Current PIN is incorrect.")
