from __future__ import annotations

import asyncio
from urllib.parse import urlencode

from magiclink.logging import get_logger, redact_email
from magiclink.service.email import EmailService
from magiclink.service.errors import (
    EmailDispatchError,
    InvalidTokenError,
    ThrottledError,
    ValidationError,
)
from magiclink.service.rate_limit import RateDecision, RateLimiter, RateScope
from magiclink.service.sessions import Session, SessionManager
from magiclink.service.tokens import TokenStore
from magiclink.service.validation import normalize_email

logger = get_logger(__name__)

CALLBACK_PATH = "/auth/callback"
LINK_SENT_MESSAGE = "Magic link sent! Check your email."


def _state(flow: str, state: str, **fields) -> None:
    logger.info("magic_link_state", flow=flow, state=state, **fields)


class MagicLinkService:
    """Drives the issuance and redemption flows.

    Issuance: validate -> rate check -> issue token -> dispatch email -> mark
    both rate scopes. Rate flags are only written after the email went out, so
    a failed send can be retried straight away.

    Redemption: consume token -> establish session.

    No step is retried here; storage fallback happens below this layer.
    """

    def __init__(
        self,
        *,
        tokens: TokenStore,
        rate_limiter: RateLimiter,
        sessions: SessionManager,
        email: EmailService,
    ) -> None:
        self.tokens = tokens
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.email = email

    @staticmethod
    def build_link(base_url: str, token: str) -> str:
        return f"{base_url.rstrip('/')}{CALLBACK_PATH}?{urlencode({'token': token})}"

    async def request_link(self, email: str, client_ip: str, base_url: str) -> str:
        """Send a magic link to ``email`` and return the user-facing message.

        Raises:
            ValidationError: the address is malformed.
            ThrottledError: the caller's IP or the address was served within
                the rate limit window.
            BackendUnavailableError: no cache accepted the token.
            EmailDispatchError: the transport reported a failure.
        """
        _state("issue", "received")
        try:
            normalized = normalize_email(email)
        except ValueError as exc:
            _state("issue", "rejected", reason="invalid_email")
            raise ValidationError(str(exc), detail={"field": "email"}) from exc
        recipient = redact_email(normalized)
        _state("issue", "validated", recipient=recipient)

        scopes = [(RateScope.IP, client_ip), (RateScope.EMAIL, normalized)]
        if await self.rate_limiter.check_all(scopes) is RateDecision.THROTTLED:
            _state("issue", "rejected", reason="throttled", recipient=recipient)
            raise ThrottledError("Too many requests. Please wait a minute before trying again.")
        _state("issue", "rate_checked", recipient=recipient)

        token = await self.tokens.issue(normalized)
        _state("issue", "token_issued", recipient=recipient)

        link = self.build_link(base_url, token)
        sent = await asyncio.to_thread(self.email.send_magic_link, normalized, link)
        if not sent:
            _state("issue", "failed", reason="email_dispatch", recipient=recipient)
            raise EmailDispatchError("Failed to send the magic link. Please try again.")
        _state("issue", "email_dispatched", recipient=recipient)

        for scope, identity in scopes:
            await self.rate_limiter.mark(scope, identity)
        _state("issue", "completed", recipient=recipient)
        return LINK_SENT_MESSAGE

    async def redeem(self, token: str | None) -> Session:
        """Consume ``token`` and open a session for its email.

        Unknown, expired, reused and malformed tokens all raise the same
        ``InvalidTokenError``.
        """
        _state("redeem", "received")
        email = await self.tokens.redeem(token)
        if email is None:
            _state("redeem", "rejected", reason="invalid_token")
            raise InvalidTokenError("Invalid or expired link.")
        recipient = redact_email(email)
        _state("redeem", "token_redeemed", recipient=recipient)
        session = await self.sessions.establish(email)
        _state("redeem", "session_established", recipient=recipient)
        _state("redeem", "completed", recipient=recipient)
        return session
