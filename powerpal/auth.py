import logging
import re
import threading
import time
from functools import wraps

import bcrypt
from flask import jsonify, redirect, request, session, url_for

from powerpal.errors import AuthError

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6
BCRYPT_MAX_BYTES = 72


def _password_bytes(password: str) -> bytes:
    # bcrypt only uses the first 72 bytes of a password
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt(rounds)).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(password), hashed.encode("utf-8"))
    except (ValueError, TypeError, AttributeError):
        return False


def normalize_email(email) -> str:
    return str(email or "").strip().lower()


class LoginThrottle:
    """Counts failed logins per email and locks the email out for a while."""

    def __init__(self, max_attempts: int = 5, window_seconds: float = 300, clock=time.time) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock
        self._failures: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def _recent(self, email: str) -> list[float]:
        cutoff = self._clock() - self.window_seconds
        attempts = [t for t in self._failures.get(email, []) if t >= cutoff]
        if attempts:
            self._failures[email] = attempts
        else:
            self._failures.pop(email, None)
        return attempts

    def is_locked(self, email: str) -> bool:
        with self._lock:
            return len(self._recent(email)) >= self.max_attempts

    def __len__(self) -> int:
        with self._lock:
            return len(self._failures)

    def _sweep(self) -> None:
        cutoff = self._clock() - self.window_seconds
        for email in [e for e, times in self._failures.items() if times[-1] < cutoff]:
            del self._failures[email]

    def record_failure(self, email: str) -> None:
        with self._lock:
            self._sweep()
            self._recent(email)
            self._failures.setdefault(email, []).append(self._clock())

    def reset(self, email: str) -> None:
        with self._lock:
            self._failures.pop(email, None)


class AuthService:
    """Email/password accounts stored in the `users` collection."""

    def __init__(self, store, throttle: LoginThrottle, bcrypt_rounds: int = 12) -> None:
        self._store = store
        self._throttle = throttle
        self._rounds = bcrypt_rounds

    def signup(self, email, password, confirm_password):
        password = password or ""
        if password != (confirm_password or ""):
            raise AuthError("auth/password-mismatch", "Passwords do not match.")

        email = normalize_email(email)
        if not EMAIL_RE.match(email):
            raise AuthError("auth/invalid-email", "The email address is not valid.")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError("auth/weak-password",
                            "The password is too weak. Please choose a stronger password.")
        if self._store.get_user_by_email(email):
            raise AuthError("auth/email-already-in-use",
                            "The email address is already in use by another account.")

        return self._store.create_user(email, hash_password(password, self._rounds))

    def login(self, email, password):
        """Verify credentials and return the user document.

        Wrong password and unknown account give the same message so the form
        does not reveal which emails are registered.
        """
        email = normalize_email(email)
        if not EMAIL_RE.match(email):
            raise AuthError("auth/invalid-email", "Invalid email address format.")

        if self._throttle.is_locked(email):
            logger.warning(f"Login locked out for {email}")
            raise AuthError("auth/too-many-requests",
                            "Too many failed login attempts. Please try again later.")

        user = self._store.get_user_by_email(email)
        if user is not None and user.get("disabled"):
            raise AuthError("auth/user-disabled", "This account has been disabled.")

        if user is None or not verify_password(password or "", user.get("password_hash", "")):
            self._throttle.record_failure(email)
            logger.info(f"Failed login for {email}")
            raise AuthError("auth/wrong-password", "Incorrect email or password.")

        self._throttle.reset(email)
        logger.info(f"User {email} logged in")
        return user


def start_session(user) -> None:
    session.clear()
    session["uid"] = user["_id"]
    session["email"] = user["email"]


def current_uid():
    return session.get("uid")


def login_required(view):
    """Redirect pages to /login; API routes answer 401."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        if not current_uid():
            if request.path.startswith("/api/"):
                return jsonify({"success": False, "error": "Authentication required"}), 401
            return redirect(url_for("login"))
        return view(*args, **kwargs)

    return wrapped
