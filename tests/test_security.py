"""Tests for SecurityContext tokens and the security middleware."""

from unittest.mock import MagicMock, patch

import pytest

from aither_core.comms.hub import SECURITY_MIDDLEWARE, CommunicationHub
from aither_core.comms.middleware import InvocationContext
from aither_core.comms.security import SecurityContext
from aither_core.errors import AuthenticationError


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_000_000.0

    def __call__(self) -> float:
        return self.now


class TestTokens:
    """Token issue, validation and expiry."""

    def test_issue_and_validate(self) -> None:
        sec = SecurityContext()
        token = sec.issue_token("LabRunner", user="ops")
        record = sec.validate(token)
        assert record.module == "LabRunner"
        assert record.user == "ops"
        assert "api:call" in record.scopes

    def test_unknown_token(self) -> None:
        with pytest.raises(AuthenticationError, match="Invalid token"):
            SecurityContext().validate("forged")

    def test_expired_token_rejected_and_purged(self) -> None:
        clock = FakeClock()
        sec = SecurityContext(default_expiration_minutes=1, clock=clock)
        token = sec.issue_token("M")
        clock.now += 61
        with pytest.raises(AuthenticationError, match="expired"):
            sec.validate(token)
        assert sec.token_count == 0

    def test_scope_required(self) -> None:
        sec = SecurityContext()
        token = sec.issue_token("M", scopes=("events:read",))
        with pytest.raises(AuthenticationError, match="scope"):
            sec.validate(token)

    def test_allowed_modules(self) -> None:
        sec = SecurityContext(allowed_modules=["ConfigurationCore"])
        ok = sec.issue_token("ConfigurationCore")
        denied = sec.issue_token("Intruder")
        sec.validate(ok)
        with pytest.raises(AuthenticationError, match="not allowed"):
            sec.validate(denied)

    def test_purge_expired(self) -> None:
        clock = FakeClock()
        sec = SecurityContext(clock=clock)
        sec.issue_token("A", expiration_minutes=1)
        sec.issue_token("B", expiration_minutes=10)
        clock.now += 120
        assert sec.purge_expired() == 1
        assert sec.token_count == 1


class TestRevocation:
    """Single and bulk token revocation."""

    def test_revoke_single_token(self) -> None:
        sec = SecurityContext()
        token = sec.issue_token("A")
        assert sec.revoke_token(token) == 1
        assert sec.revoke_token(token) == 0

    def test_bulk_revoke_uses_confirm_callback(self) -> None:
        sec = SecurityContext()
        for _ in range(3):
            sec.issue_token("A")
        sec.issue_token("B")
        prompts: list[str] = []

        def deny(prompt: str) -> bool:
            prompts.append(prompt)
            return False

        assert sec.revoke_token(module="A", confirm=deny) == 0
        assert "3 token(s)" in prompts[0]
        assert sec.revoke_token(module="A", confirm=lambda p: True) == 3
        assert sec.token_count == 1

    def test_bulk_revoke_prompts_with_questionary(self) -> None:
        sec = SecurityContext()
        sec.issue_token("A", user="ops")
        question = MagicMock()
        question.ask.return_value = True
        with patch("aither_core.comms.security.questionary.confirm", return_value=question) as confirm:
            assert sec.revoke_token(user="ops") == 1
        confirm.assert_called_once()

    def test_force_skips_confirmation(self) -> None:
        sec = SecurityContext()
        sec.issue_token("A")
        with patch("aither_core.comms.security.questionary.confirm") as confirm:
            assert sec.revoke_token(module="A", force=True) == 1
        confirm.assert_not_called()

    def test_revoke_needs_a_target(self) -> None:
        with pytest.raises(ValueError):
            SecurityContext().revoke_token()


class TestSecurityMiddleware:
    """Security middleware on API calls."""

    @pytest.mark.asyncio
    async def test_attaches_identity(self) -> None:
        sec = SecurityContext()
        token = sec.issue_token("LabRunner", user="ops")
        ctx = InvocationContext("Config", "Get", headers={"Authorization": f"Bearer {token}"})

        async def terminal(context: InvocationContext) -> tuple[str, str]:
            return context.caller_module, context.user

        assert await sec.middleware(ctx, terminal) == ("LabRunner", "ops")
        assert ctx.authentication.token == token

    @pytest.mark.asyncio
    async def test_missing_header(self) -> None:
        async def terminal(context: InvocationContext) -> str:
            return "ran"

        strict = SecurityContext()
        with pytest.raises(AuthenticationError):
            await strict.middleware(InvocationContext("A", "b"), terminal)
        lax = SecurityContext(require_authentication=False)
        assert await lax.middleware(InvocationContext("A", "b"), terminal) == "ran"

    @pytest.mark.asyncio
    async def test_wrong_scheme_and_skip_flag(self) -> None:
        sec = SecurityContext()

        async def terminal(context: InvocationContext) -> str:
            return "ran"

        with pytest.raises(AuthenticationError, match="Bearer"):
            await sec.middleware(InvocationContext("A", "b", headers={"Authorization": "Basic x"}), terminal)
        skipped = InvocationContext("A", "b", metadata={"skip_security": True})
        assert await sec.middleware(skipped, terminal) == "ran"


class TestHubSecurity:
    """enable_security and token helpers on the hub."""

    @pytest.mark.asyncio
    async def test_enable_security_guards_api_calls(self) -> None:
        hub = CommunicationHub()
        hub.register_api("Config", "Get", lambda key: {"lab.max_vms": 4}.get(key))
        hub.enable_security()
        assert hub.get_middleware()[0].name == SECURITY_MIDDLEWARE

        with pytest.raises(AuthenticationError):
            await hub.invoke_api("Config", "Get", {"key": "lab.max_vms"})
        # skip_middleware does not bypass security
        with pytest.raises(AuthenticationError):
            await hub.invoke_api("Config", "Get", {"key": "lab.max_vms"}, skip_middleware=True)

        token = hub.issue_token("LabRunner")
        assert await hub.invoke_api("Config", "Get", {"key": "lab.max_vms"}, auth_token=token) == 4
        # authentication failures are not retried
        assert hub.get_call_history("Config.Get")[0].attempts == 1

    def test_token_operations_need_security(self) -> None:
        hub = CommunicationHub()
        with pytest.raises(RuntimeError):
            hub.issue_token("A")
        hub.enable_security()
        hub.disable_security()
        assert SECURITY_MIDDLEWARE not in [e.name for e in hub.get_middleware()]
