"""Custom exception hierarchy for Countersign."""

from typing import Any


class CountersignError(Exception):
    """Base exception for all Countersign errors."""

    # Pending writes made before raising are committed, not rolled back
    persist_on_error = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ----- Authentication Errors -----


class AuthenticationError(CountersignError):
    """Caller could not be authenticated."""

    pass


# ----- Signing Link Errors -----
# Shown to the link holder. Messages must not reveal deal state.


class SigningLinkError(CountersignError):
    """A signing link cannot be used."""

    code = "signing_link_error"


class TokenInvalidError(SigningLinkError):
    """Signing token is unknown or no longer valid."""

    code = "token_invalid"

    def __init__(self) -> None:
        super().__init__(
            message="This signing link is not valid. Please ask for a new link.",
        )


class TokenExpiredError(SigningLinkError):
    """Signing token is past its expiry time."""

    code = "token_expired"
    persist_on_error = True

    def __init__(self) -> None:
        super().__init__(
            message="This signing link has expired. Please ask for a new link.",
        )


class TokenAlreadyUsedError(SigningLinkError):
    """Signing token was already redeemed."""

    code = "token_already_used"

    def __init__(self) -> None:
        super().__init__(
            message="This signing link has already been used.",
        )


class SignerMismatchError(SigningLinkError):
    """Requester is not the signer the link was issued to."""

    code = "signer_mismatch"

    def __init__(self) -> None:
        super().__init__(
            message="This signing link was issued to a different email address.",
        )


# ----- One-Time Code Errors -----


class OtpError(SigningLinkError):
    """A one-time code step failed."""

    code = "otp_error"


class OtpRequiredError(OtpError):
    """Signing was attempted before a one-time code was verified."""

    code = "otp_required"

    def __init__(self) -> None:
        super().__init__(
            message="Please verify the code sent to your email before signing.",
        )


class OtpNotRequestedError(OtpError):
    """No one-time code is outstanding for this link."""

    code = "otp_not_requested"

    def __init__(self) -> None:
        super().__init__(message="No verification code was requested for this link.")


class OtpExpiredError(OtpError):
    """The one-time code is past its expiry time."""

    code = "otp_expired"

    def __init__(self) -> None:
        super().__init__(message="The verification code has expired. Please request a new one.")


class OtpInvalidError(OtpError):
    """The one-time code did not match. The failed attempt is kept."""

    code = "otp_invalid"
    persist_on_error = True

    def __init__(self, attempts_remaining: int) -> None:
        super().__init__(
            message="The verification code is not correct.",
            details={"attempts_remaining": attempts_remaining},
        )


class OtpAttemptsExceededError(OtpError):
    """Too many wrong codes; a new code must be requested."""

    code = "otp_attempts_exceeded"
    persist_on_error = True

    def __init__(self) -> None:
        super().__init__(
            message="Too many incorrect codes. Please request a new one.",
        )


# ----- Resource Errors -----


class NotFoundError(CountersignError):
    """Requested resource was not found."""

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(
            message=f"{resource} not found",
            details={"resource": resource, "identifier": identifier},
        )


class ConflictError(CountersignError):
    """Resource conflict (e.g., duplicate)."""

    pass


class StorageConflictError(ConflictError):
    """A write lost a race against a concurrent writer and may be retried."""

    pass


# ----- Validation Errors -----


class ValidationError(CountersignError):
    """Input validation failed."""

    pass


# ----- Workflow Errors -----


class DealNotReadyError(ConflictError):
    """Deal is not in a stage that requires this party's signature."""

    def __init__(self, deal_id: str, stage: str, role: str) -> None:
        super().__init__(
            message="Deal is not ready for this party to sign",
            details={"deal_id": deal_id, "stage": stage, "role": role},
        )


class AlreadySignedError(ConflictError):
    """A signed record already exists for this deal, role and contract version.

    Callers treat this as success: it is the idempotency guard against
    duplicate submissions and duplicate provider confirmations.
    """

    def __init__(self, deal_id: str, role: str, contract_version: str) -> None:
        super().__init__(
            message="Contract has already been signed by this party",
            details={
                "deal_id": deal_id,
                "role": role,
                "contract_version": contract_version,
            },
        )


class InvalidTransitionError(ConflictError):
    """Requested deal stage transition is not allowed."""

    def __init__(self, deal_id: str, from_stage: str, to_stage: str) -> None:
        super().__init__(
            message=f"Cannot move deal from {from_stage} to {to_stage}",
            details={"deal_id": deal_id, "from_stage": from_stage, "to_stage": to_stage},
        )


# ----- External Service Errors -----


class ExternalServiceError(CountersignError):
    """Error from an external service."""

    pass


class ProviderUnavailableError(ExternalServiceError):
    """E-signature provider could not be reached or gave no usable answer."""

    pass
