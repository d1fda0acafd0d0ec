"""
auth/errors.py -- Login flow failure kinds.

Every failure is terminal: it is raised at the point of detection, never
caught inside the flow, and rendered by the single exception handler in
api/main.py as {"error": {"code": ..., "message": ...}}.

code is the stable machine-readable identifier; message is safe to show to
the end user (no tokens, codes, or claim values are ever interpolated).

Layer rule: no imports from api/, web/, core/, or loginflow/.
"""

from __future__ import annotations

from typing import Any


class LoginFlowError(Exception):
    """Base class for every failure surfaced by the OIDC login flow."""

    code: str = "login_failed"
    status_code: int = 400
    message: str = "Login failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        if message:
            self.message = message


class MissingAuthCode(LoginFlowError):
    code = "missing_auth_code"
    message = "No authorization code was received from the identity provider."


class MissingState(LoginFlowError):
    code = "missing_state"
    message = "No state was received from the identity provider."


class UnknownOrExpiredState(LoginFlowError):
    code = "unknown_state"
    message = "Unknown or expired login request. Please start again."


class MissingIdToken(LoginFlowError):
    code = "missing_id_token"
    status_code = 502
    message = "The identity provider did not return an ID token."


class NonceMismatch(LoginFlowError):
    code = "nonce_mismatch"
    message = "The ID token does not belong to this login request."


class InvalidIdToken(LoginFlowError):
    code = "invalid_id_token"
    message = "The ID token could not be verified."


class RestrictionFailed(LoginFlowError):
    code = "restricted"
    status_code = 403
    message = "You are not allowed to log in with this identity."


class AccountAlreadyConnected(LoginFlowError):
    code = "account_already_connected"
    status_code = 409
    message = "Your account is already connected to a different identity."


class IdentityAlreadyConnectedToDifferentAccount(LoginFlowError):
    code = "identity_connected_to_different_account"
    status_code = 409
    message = "This identity is already connected to a different account."


class PendingExternalMatch(LoginFlowError):
    """The candidate username has a staged manual match awaiting resolution.

    matched carries a reference to the matched local account so the caller can
    route the user to the manual resolution page.
    """

    code = "pending_match"
    status_code = 409
    message = "This identity has been matched to an existing account and needs to be confirmed."

    def __init__(self, matched: dict[str, Any], message: str | None = None) -> None:
        super().__init__(message)
        self.matched = matched


class NoAccountProvisioning(LoginFlowError):
    code = "no_account"
    status_code = 403
    message = "No account exists for this identity and new accounts cannot be created."


class LoginFailed(LoginFlowError):
    code = "login_failed"
    status_code = 401
    message = "Login failed."


class IdentityProviderError(LoginFlowError):
    """Transport or protocol failure talking to the identity provider."""

    code = "idp_error"
    status_code = 502
    message = "The identity provider could not be reached."


class TokenRecordConflict(Exception):
    """A token record for this external identity already exists (unique constraint)."""
