"""Signing token lifecycle: issue, validate, one-time code step-up, redeem.

``validate`` is repeatable and never consumes a token, so a link can be
previewed before the holder commits. ``redeem`` is the single point where a
token is spent; it relies on one conditional UPDATE so that concurrent
redemptions of the same token produce exactly one winner.

Before a token can be redeemed its holder proves control of the signer email
with a one-time code (`request_otp` then `verify_otp`). Codes are stored as
an HMAC, expire, and allow a limited number of wrong guesses.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from uuid import UUID

from tenacity import retry, retry_if_exception_type, stop_after_attempt

from countersign.domain.signing.ports import (
    DealRepositoryPort,
    SignatureRepositoryPort,
    SigningTokenRepositoryPort,
    TransactionPort,
)
from countersign.infrastructure.database.models.deal import DealStage, SignerRole
from countersign.infrastructure.database.models.signing import (
    SigningToken,
    TokenInvalidationReason,
)
from countersign.shared.clock import Clock, as_utc, utc_now
from countersign.shared.exceptions import (
    DealNotReadyError,
    NotFoundError,
    OtpAttemptsExceededError,
    OtpExpiredError,
    OtpInvalidError,
    OtpNotRequestedError,
    OtpRequiredError,
    SignerMismatchError,
    SigningLinkError,
    StorageConflictError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from countersign.shared.logging import get_logger
from countersign.shared.signing_tokens import (
    generate_otp_code,
    generate_token_value,
    hash_otp,
    hash_token,
    is_well_formed,
    otp_matches,
)

logger = get_logger(__name__)

DEFAULT_TOKEN_TTL = timedelta(days=7)
DEFAULT_RETENTION = timedelta(days=30)
DEFAULT_OTP_TTL = timedelta(minutes=10)
DEFAULT_OTP_MAX_ATTEMPTS = 5

# Tokens invalidated for these reasons look exactly like unknown tokens.
_HIDDEN_REASONS = frozenset(
    {
        TokenInvalidationReason.SUPERSEDED,
        TokenInvalidationReason.DEAL_DECLINED,
        TokenInvalidationReason.CONTRACT_REVISED,
    }
)


@dataclass(frozen=True)
class IssuedToken:
    """A freshly issued token. `value` is the only copy of the raw secret."""

    value: str
    token_id: UUID
    deal_id: UUID
    role: SignerRole
    signer_email: str
    expires_at: datetime
    superseded: int = 0


@dataclass(frozen=True)
class TokenContext:
    """What a valid token grants: one role's signature on one deal."""

    token_id: UUID
    deal_id: UUID
    role: SignerRole
    signer_email: str
    expires_at: datetime
    otp_verified_at: datetime | None = None


@dataclass(frozen=True)
class IssuedOtp:
    """A freshly issued one-time code. `code` is the only copy of the raw value."""

    code: str
    expires_at: datetime
    context: TokenContext


def _unusable_reason(token: SigningToken | None, now: datetime) -> SigningLinkError | None:
    """Classify a token. Order matters: unknown, expired, used, invalid."""
    if token is None:
        return TokenInvalidError()
    reason = token.invalidated_reason
    if not token.is_valid and reason and TokenInvalidationReason(reason) in _HIDDEN_REASONS:
        return TokenInvalidError()
    if now >= as_utc(token.expires_at):
        return TokenExpiredError()
    if token.consumed_at is not None:
        return TokenAlreadyUsedError()
    if not token.is_valid:
        return TokenInvalidError()
    return None


def _context(token: SigningToken) -> TokenContext:
    return TokenContext(
        token_id=token.id,
        deal_id=token.deal_id,
        role=SignerRole(token.role),
        signer_email=token.signer_email,
        expires_at=as_utc(token.expires_at),
        otp_verified_at=as_utc(token.otp_verified_at) if token.otp_verified_at else None,
    )


class TokenLifecycleManager:
    """Issues, validates and redeems signing tokens.

    The only writer of signing token rows.
    """

    def __init__(
        self,
        token_repo: SigningTokenRepositoryPort,
        deal_repo: DealRepositoryPort,
        signature_repo: SignatureRepositoryPort,
        transaction: TransactionPort,
        *,
        ttl: timedelta = DEFAULT_TOKEN_TTL,
        retention: timedelta = DEFAULT_RETENTION,
        require_otp: bool = True,
        otp_ttl: timedelta = DEFAULT_OTP_TTL,
        otp_max_attempts: int = DEFAULT_OTP_MAX_ATTEMPTS,
        clock: Clock = utc_now,
    ) -> None:
        self.token_repo = token_repo
        self.deal_repo = deal_repo
        self.signature_repo = signature_repo
        self.transaction = transaction
        self.ttl = ttl
        self.retention = retention
        self.require_otp = require_otp
        self.otp_ttl = otp_ttl
        self.otp_max_attempts = otp_max_attempts
        self.clock = clock

    @retry(
        retry=retry_if_exception_type(StorageConflictError),
        stop=stop_after_attempt(2),
        reraise=True,
    )
    async def issue(
        self,
        deal_id: UUID,
        role: SignerRole,
        signer_email: str | None = None,
    ) -> IssuedToken:
        """Issue a new token for (deal, role), superseding any valid one.

        Args:
            deal_id: Deal to be signed
            role: Party the link is for
            signer_email: Recipient; defaults to the party's email on the deal

        Raises:
            NotFoundError: Unknown deal
            DealNotReadyError: Deal is not waiting for this party's signature
            ValidationError: No signer email available
        """
        deal = await self.deal_repo.get_by_id(deal_id)
        if deal is None:
            raise NotFoundError("Deal", str(deal_id))

        stage = DealStage(deal.stage)
        if stage != DealStage.CONTRACT_READY or deal.contract_version is None:
            raise DealNotReadyError(str(deal_id), stage.value, role.value)
        if await self.signature_repo.get_signed(deal.id, role, deal.contract_version):
            raise DealNotReadyError(str(deal_id), stage.value, role.value)

        email = signer_email or deal.email_for(role)
        if not email:
            raise ValidationError(
                "No signer email is known for this party",
                details={"deal_id": str(deal_id), "role": role.value},
            )

        now = self.clock()
        value = generate_token_value()
        token = SigningToken(
            token_hash=hash_token(value),
            deal_id=deal.id,
            role=role,
            signer_email=email,
            created_at=now,
            expires_at=now + self.ttl,
            is_valid=True,
            otp_attempts=0,
        )

        async with self.transaction.begin_nested():
            superseded = await self.token_repo.invalidate_valid(
                deal.id, role, TokenInvalidationReason.SUPERSEDED
            )
            await self.token_repo.add(token)

        logger.info(
            "signing_token_issued",
            deal_id=str(deal.id),
            role=role.value,
            token_id=str(token.id),
            superseded=superseded,
            expires_at=token.expires_at.isoformat(),
        )

        return IssuedToken(
            value=value,
            token_id=token.id,
            deal_id=deal.id,
            role=role,
            signer_email=email,
            expires_at=token.expires_at,
            superseded=superseded,
        )

    async def validate(self, token_value: str) -> TokenContext:
        """Check a token without consuming it.

        A token seen past its expiry is invalidated on the spot. The error
        asks the session owner to keep that write.

        Raises:
            TokenInvalidError, TokenExpiredError, TokenAlreadyUsedError
        """
        return _context(await self._require_usable(token_value))

    async def request_otp(self, token_value: str, email: str) -> IssuedOtp:
        """Issue a one-time code for a usable token, replacing any earlier one.

        Raises:
            TokenInvalidError, TokenExpiredError, TokenAlreadyUsedError
            SignerMismatchError: `email` is not the address the link was sent to
        """
        token = await self._require_usable(token_value)
        if email.strip().lower() != token.signer_email.strip().lower():
            logger.info(
                "signing_otp_signer_mismatch",
                deal_id=str(token.deal_id),
                token_id=str(token.id),
            )
            raise SignerMismatchError()

        now = self.clock()
        code = generate_otp_code()
        expires_at = now + self.otp_ttl
        if not await self.token_repo.set_otp(token.id, hash_otp(code, token.id), expires_at):
            # Redeemed or invalidated since the lookup
            current = await self.token_repo.get_by_hash(token.token_hash)
            raise _unusable_reason(current, now) or TokenInvalidError()

        logger.info(
            "signing_otp_issued",
            deal_id=str(token.deal_id),
            token_id=str(token.id),
            expires_at=expires_at.isoformat(),
        )
        return IssuedOtp(code=code, expires_at=expires_at, context=_context(token))

    async def verify_otp(self, token_value: str, code: str) -> TokenContext:
        """Check a one-time code. Verifying the same correct code again is a no-op.

        Raises:
            TokenInvalidError, TokenExpiredError, TokenAlreadyUsedError
            OtpNotRequestedError, OtpExpiredError
            OtpInvalidError: Wrong code; the failed attempt is kept
            OtpAttemptsExceededError: Too many wrong codes
        """
        token = await self._require_usable(token_value)
        now = self.clock()

        if token.otp_hash is None or token.otp_expires_at is None:
            raise OtpNotRequestedError()
        attempts = token.otp_attempts or 0
        if attempts >= self.otp_max_attempts:
            raise OtpAttemptsExceededError()
        if token.otp_verified_at is None and now >= as_utc(token.otp_expires_at):
            raise OtpExpiredError()

        if not otp_matches(code, token.id, token.otp_hash):
            if not await self.token_repo.record_otp_failure(token.id, self.otp_max_attempts):
                raise OtpAttemptsExceededError()
            remaining = self.otp_max_attempts - attempts - 1
            logger.info(
                "signing_otp_rejected",
                deal_id=str(token.deal_id),
                token_id=str(token.id),
                attempts_remaining=remaining,
            )
            if remaining <= 0:
                raise OtpAttemptsExceededError()
            raise OtpInvalidError(attempts_remaining=remaining)

        if token.otp_verified_at is not None:
            return _context(token)

        if not await self.token_repo.mark_otp_verified(token.id, now):
            current = await self.token_repo.get_by_hash(token.token_hash)
            if current is None or current.otp_verified_at is None:
                raise _unusable_reason(current, now) or OtpNotRequestedError()
            return _context(current)

        logger.info("signing_otp_verified", deal_id=str(token.deal_id), token_id=str(token.id))
        return replace(_context(token), otp_verified_at=now)

    async def redeem(self, token_value: str) -> TokenContext:
        """Consume a token. Succeeds at most once per token.

        With one-time codes required, the token must carry a verified code.

        Raises:
            TokenInvalidError, TokenExpiredError, TokenAlreadyUsedError
            OtpRequiredError: No verified one-time code on the token
            StorageConflictError: Lock contention; the caller may retry.
        """
        token = await self._lookup(token_value)
        now = self.clock()
        error = _unusable_reason(token, now)
        if error is not None:
            raise error
        assert token is not None
        if self.require_otp and token.otp_verified_at is None:
            raise OtpRequiredError()

        if not await self.token_repo.consume(token.id, now, require_otp=self.require_otp):
            # Lost the race; report what the winner left behind.
            current = await self.token_repo.get_by_hash(token.token_hash)
            error = _unusable_reason(current, now)
            if error is None and self.require_otp:
                error = OtpRequiredError()
            logger.info(
                "signing_token_redeem_rejected",
                deal_id=str(token.deal_id),
                token_id=str(token.id),
                reason=error.code if error else "unknown",
            )
            raise error or TokenAlreadyUsedError()

        logger.info(
            "signing_token_redeemed",
            deal_id=str(token.deal_id),
            role=SignerRole(token.role).value,
            token_id=str(token.id),
        )
        return _context(token)

    async def invalidate_for_deal(
        self,
        deal_id: UUID,
        reason: TokenInvalidationReason,
    ) -> int:
        """Invalidate every outstanding token of a deal."""
        count = await self.token_repo.invalidate_all_for_deal(deal_id, reason)
        if count:
            logger.info(
                "signing_tokens_invalidated",
                deal_id=str(deal_id),
                reason=reason.value,
                count=count,
            )
        return count

    async def purge_expired(self) -> int:
        """Delete tokens that expired longer ago than the retention window."""
        cutoff = self.clock() - self.retention
        count = await self.token_repo.purge_expired(cutoff)
        logger.info("signing_tokens_purged", count=count, cutoff=cutoff.isoformat())
        return count

    async def _lookup(self, token_value: str) -> SigningToken | None:
        if not is_well_formed(token_value):
            return None
        return await self.token_repo.get_by_hash(hash_token(token_value))

    async def _require_usable(self, token_value: str) -> SigningToken:
        """Look up a token or raise why it cannot be used.

        A valid token seen past its expiry is invalidated on the spot.
        """
        token = await self._lookup(token_value)
        now = self.clock()
        error = _unusable_reason(token, now)
        if error is None:
            assert token is not None
            return token

        if isinstance(error, TokenExpiredError) and token is not None and token.is_valid:
            if await self.token_repo.mark_expired(token.id):
                logger.info(
                    "signing_token_expired",
                    deal_id=str(token.deal_id),
                    token_id=str(token.id),
                )
        raise error
