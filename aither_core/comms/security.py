"""Bearer tokens and the security middleware for API calls."""

import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

import questionary

from aither_core.comms.middleware import InvocationContext, Next
from aither_core.errors import AuthenticationError

logger = logging.getLogger(__name__)

API_CALL_SCOPE = "api:call"
_BEARER = "bearer "


@dataclass(frozen=True)
class AuthToken:
    token: str
    module: str
    user: str
    issued_at: float
    expires_at: float
    scopes: tuple[str, ...] = field(default_factory=tuple)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


def _ask_confirmation(prompt: str) -> bool:
    return bool(questionary.confirm(prompt, default=False).ask())


class SecurityContext:
    """In-memory token store plus the highest-priority API middleware."""

    def __init__(
        self,
        default_expiration_minutes: float = 60,
        require_authentication: bool = True,
        allowed_modules: Iterable[str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.default_expiration_minutes = default_expiration_minutes
        self.require_authentication = require_authentication
        self.allowed_modules: set[str] = set(allowed_modules or [])
        self._clock = clock
        self._tokens: dict[str, AuthToken] = {}
        self._lock = threading.Lock()

    @property
    def token_count(self) -> int:
        with self._lock:
            return len(self._tokens)

    def issue_token(
        self,
        module: str,
        user: str = "",
        expiration_minutes: float | None = None,
        scopes: Iterable[str] = (API_CALL_SCOPE,),
    ) -> str:
        minutes = self.default_expiration_minutes if expiration_minutes is None else expiration_minutes
        now = self._clock()
        token = AuthToken(
            token=secrets.token_urlsafe(32),
            module=module,
            user=user,
            issued_at=now,
            expires_at=now + minutes * 60,
            scopes=tuple(scopes),
        )
        with self._lock:
            self._tokens[token.token] = token
        logger.info("Issued token for module %s (user %s, %s min)", module, user or "-", minutes)
        return token.token

    def validate(self, token: str, required_scope: str = API_CALL_SCOPE) -> AuthToken:
        """Return the token record or raise AuthenticationError. Expired tokens are purged."""
        now = self._clock()
        with self._lock:
            record = self._tokens.get(token)
            if record is not None and record.is_expired(now):
                del self._tokens[token]
                raise AuthenticationError("Token expired")
        if record is None:
            raise AuthenticationError("Invalid token")
        if required_scope and required_scope not in record.scopes:
            raise AuthenticationError(f"Token lacks required scope '{required_scope}'")
        if self.allowed_modules and record.module not in self.allowed_modules:
            raise AuthenticationError(f"Module {record.module} is not allowed")
        return record

    def revoke_token(
        self,
        token: str | None = None,
        module: str | None = None,
        user: str | None = None,
        force: bool = False,
        confirm: Callable[[str], bool] | None = None,
    ) -> int:
        """Revoke one token, or every token of a module/user. Bulk revocation asks
        for confirmation unless forced. Returns number of tokens removed."""
        if token is not None:
            with self._lock:
                removed = self._tokens.pop(token, None) is not None
            if removed:
                logger.info("Token revoked")
            return int(removed)
        if module is None and user is None:
            raise ValueError("revoke_token needs token, module or user")
        with self._lock:
            matches = [
                t.token
                for t in self._tokens.values()
                if (module is None or t.module == module) and (user is None or t.user == user)
            ]
        if not matches:
            return 0
        if not force:
            ask = confirm or _ask_confirmation
            target = f"module {module}" if module is not None else f"user {user}"
            if not ask(f"Revoke {len(matches)} token(s) for {target}?"):
                logger.info("Token revocation for %s cancelled", target)
                return 0
        with self._lock:
            removed_count = sum(1 for t in matches if self._tokens.pop(t, None) is not None)
        logger.info("Revoked %d token(s)", removed_count)
        return removed_count

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, t in self._tokens.items() if t.is_expired(now)]
            for k in expired:
                del self._tokens[k]
        return len(expired)

    async def middleware(self, context: InvocationContext, next: Next) -> Any:
        """Require 'Authorization: Bearer <token>' unless metadata.skip_security."""
        if context.metadata.get("skip_security"):
            return await next(context)
        header = context.headers.get("Authorization", "")
        if not header:
            if self.require_authentication:
                raise AuthenticationError(f"Authentication required for {context.full_name}")
            return await next(context)
        if not header.lower().startswith(_BEARER):
            raise AuthenticationError("Authorization header must use the Bearer scheme")
        record = self.validate(header[len(_BEARER):].strip())
        context.authentication = record
        context.user = record.user
        context.caller_module = record.module
        return await next(context)
