"""Firebase Authentication as the portal's identity provider."""

import json
import os
from typing import Any

import firebase_admin
import httpx
from firebase_admin import auth, credentials, exceptions
from structlog import get_logger

from app.core.exceptions import (
    ChallengeExpiredError,
    IdentityProviderError,
    IdentityUnavailableError,
    InvalidCodeError,
    InvalidCredentialsError,
)
from app.core.identity import (
    IdentitySession,
    IdentityUser,
    MfaStrategy,
    SecondFactor,
    SignInAttempt,
    SignInStatus,
)

logger = get_logger(__name__)

_firebase_app: firebase_admin.App | None = None

# Custom-claims key holding client-writable metadata
UNSAFE_METADATA_CLAIM = "unsafe_metadata"

_CREDENTIAL_ERRORS = {
    "EMAIL_NOT_FOUND",
    "INVALID_PASSWORD",
    "INVALID_LOGIN_CREDENTIALS",
    "INVALID_EMAIL",
    "USER_DISABLED",
    "TOO_MANY_ATTEMPTS_TRY_LATER",
    "EMAIL_EXISTS",
    "WEAK_PASSWORD",
}
_CODE_ERRORS = {
    "INVALID_CODE",
    "INVALID_VERIFICATION_CODE",
    "INVALID_SESSION_INFO",
    "SESSION_EXPIRED",
    "CODE_EXPIRED",
}
_CHALLENGE_ERRORS = {"INVALID_MFA_PENDING_CREDENTIAL", "MISSING_MFA_PENDING_CREDENTIAL"}


def initialize_firebase(
    firebase_credentials_path: str | None = None, firebase_config_json: str | None = None
) -> None:
    """
    Initialize Firebase Admin SDK.

    Args:
        firebase_credentials_path: Optional path to service account JSON file.
        firebase_config_json: Optional raw JSON string of service account.

    Looks for Firebase credentials in order:
    1. firebase_config_json parameter
    2. firebase_credentials_path parameter
    3. Default application credentials
    """
    global _firebase_app

    if _firebase_app is not None:
        logger.info("Firebase already initialized")
        return

    try:
        cred = None

        if firebase_config_json:
            logger.info("Initializing Firebase with JSON string from environment")
            cred = credentials.Certificate(json.loads(firebase_config_json))
        elif firebase_credentials_path and os.path.exists(firebase_credentials_path):
            logger.info("Initializing Firebase with JSON file", path=firebase_credentials_path)
            cred = credentials.Certificate(firebase_credentials_path)

        if cred:
            _firebase_app = firebase_admin.initialize_app(cred)
        else:
            _firebase_app = firebase_admin.initialize_app()
            logger.info("Firebase initialized with default credentials")

    except Exception as e:
        logger.error("Failed to initialize Firebase", error=str(e))
        raise


def _split_display_name(display_name: str | None) -> tuple[str | None, str | None]:
    if not display_name:
        return None, None
    parts = display_name.split(" ", 1)
    return parts[0], parts[1] if len(parts) > 1 else None


def _factor_from_mfa_info(info: dict[str, Any]) -> SecondFactor:
    if "totpInfo" in info:
        strategy = MfaStrategy.TOTP
    elif "emailInfo" in info:
        strategy = MfaStrategy.EMAIL_CODE
    else:
        strategy = MfaStrategy.PHONE_CODE
    return SecondFactor(
        strategy=strategy,
        factor_id=info.get("mfaEnrollmentId"),
        hint=info.get("phoneInfo") or info.get("displayName"),
    )


class FirebaseIdentityProvider:
    """
    Identity provider backed by Firebase Authentication.

    Password and multi-factor sign-in go through the Identity Toolkit REST API;
    user reads, custom claims, token verification and session revocation go
    through the Admin SDK. Custom claims act as the identity's public metadata,
    with client-writable keys nested under ``unsafe_metadata``.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize with Identity Toolkit API key, base URL and optional transport."""
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST to Identity Toolkit and translate its error envelope."""
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}{path}",
                    params={"key": self.api_key},
                    json=payload,
                )
        except httpx.HTTPError as e:
            logger.error("identity_toolkit_request_failed", path=path, error=str(e))
            raise IdentityUnavailableError(f"Identity provider unreachable: {e!s}")

        if response.status_code >= 500:
            raise IdentityUnavailableError(
                f"Identity provider error: HTTP {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError as e:
            logger.error("identity_toolkit_invalid_body", path=path, status_code=response.status_code)
            raise IdentityUnavailableError(
                f"Identity provider returned invalid JSON: HTTP {response.status_code}"
            ) from e
        if not isinstance(data, dict):
            raise IdentityUnavailableError("Identity provider returned a non-object body")

        if response.status_code >= 400:
            error = data.get("error")
            message = str((error.get("message") if isinstance(error, dict) else error) or "UNKNOWN")
            # Messages look like "INVALID_CODE : details"
            code = message.split(":", 1)[0].strip()
            logger.info("identity_toolkit_rejected", path=path, provider_code=code)
            if code in _CHALLENGE_ERRORS:
                raise ChallengeExpiredError(message, code=code)
            if code in _CODE_ERRORS:
                raise InvalidCodeError(message, code=code)
            if code in _CREDENTIAL_ERRORS:
                raise InvalidCredentialsError(message, code=code)
            raise IdentityProviderError(message, code=code)

        return data

    async def sign_in(self, email: str, password: str) -> SignInAttempt:
        data = await self._post(
            "/v1/accounts:signInWithPassword",
            {"email": email, "password": password, "returnSecureToken": True},
        )

        if "mfaPendingCredential" in data:
            return SignInAttempt(
                status=SignInStatus.NEEDS_SECOND_FACTOR,
                attempt_id=data["mfaPendingCredential"],
                second_factors=[_factor_from_mfa_info(info) for info in data.get("mfaInfo", [])],
            )

        return SignInAttempt(
            status=SignInStatus.COMPLETE,
            session=IdentitySession(
                user_id=data["localId"],
                id_token=data["idToken"],
                refresh_token=data.get("refreshToken"),
            ),
        )

    async def prepare_second_factor(self, attempt_id: str, factor: SecondFactor) -> str | None:
        # Authenticator apps need no server-side challenge
        if factor.strategy is MfaStrategy.TOTP:
            return None

        data = await self._post(
            "/v2/accounts/mfaSignIn:start",
            {
                "mfaPendingCredential": attempt_id,
                "mfaEnrollmentId": factor.factor_id,
                "phoneSignInInfo": {},
            },
        )
        return data.get("phoneResponseInfo", {}).get("sessionInfo")

    async def attempt_second_factor(
        self,
        attempt_id: str,
        strategy: MfaStrategy,
        code: str,
        *,
        factor_id: str | None = None,
        verification_id: str | None = None,
    ) -> IdentitySession:
        payload: dict[str, Any] = {"mfaPendingCredential": attempt_id}
        if strategy is MfaStrategy.TOTP:
            payload["mfaEnrollmentId"] = factor_id
            payload["totpVerificationInfo"] = {"verificationCode": code}
        else:
            payload["phoneVerificationInfo"] = {"sessionInfo": verification_id, "code": code}

        data = await self._post("/v2/accounts/mfaSignIn:finalize", payload)
        id_token = data["idToken"]
        return IdentitySession(
            user_id=await self.verify_token(id_token),
            id_token=id_token,
            refresh_token=data.get("refreshToken"),
        )

    async def sign_up(
        self,
        email: str,
        password: str,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        unsafe_metadata: dict[str, Any] | None = None,
    ) -> IdentitySession:
        data = await self._post(
            "/v1/accounts:signUp",
            {"email": email, "password": password, "returnSecureToken": True},
        )
        session = IdentitySession(
            user_id=data["localId"],
            id_token=data["idToken"],
            refresh_token=data.get("refreshToken"),
        )

        display_name = " ".join(part for part in (first_name, last_name) if part)
        try:
            if display_name:
                auth.update_user(session.user_id, display_name=display_name)
            if unsafe_metadata:
                await self.update_metadata(session.user_id, unsafe=unsafe_metadata)
        except exceptions.FirebaseError as e:
            raise IdentityUnavailableError(f"Failed to finish sign-up: {e!s}")

        return session

    async def get_user(self, user_id: str) -> IdentityUser | None:
        try:
            record = auth.get_user(user_id)
        except auth.UserNotFoundError:
            return None
        except exceptions.FirebaseError as e:
            raise IdentityUnavailableError(f"Failed to read user: {e!s}")

        claims = dict(record.custom_claims or {})
        unsafe = claims.pop(UNSAFE_METADATA_CLAIM, None) or {}
        first_name, last_name = _split_display_name(record.display_name)

        return IdentityUser(
            user_id=record.uid,
            email=record.email,
            email_verified=bool(record.email_verified),
            first_name=first_name,
            last_name=last_name,
            image_url=record.photo_url,
            public_metadata=claims,
            unsafe_metadata=dict(unsafe),
        )

    async def update_metadata(
        self,
        user_id: str,
        *,
        public: dict[str, Any] | None = None,
        unsafe: dict[str, Any] | None = None,
    ) -> None:
        try:
            record = auth.get_user(user_id)
            claims = dict(record.custom_claims or {})
            if public:
                claims.update(public)
            if unsafe:
                merged = dict(claims.get(UNSAFE_METADATA_CLAIM) or {})
                merged.update(unsafe)
                claims[UNSAFE_METADATA_CLAIM] = merged
            auth.set_custom_user_claims(user_id, claims)
        except exceptions.FirebaseError as e:
            raise IdentityUnavailableError(f"Failed to update metadata: {e!s}")

    async def verify_token(self, id_token: str) -> str:
        decoded = await verify_firebase_token(id_token)
        return decoded["uid"]

    async def sign_out(self, user_id: str) -> None:
        try:
            auth.revoke_refresh_tokens(user_id)
        except exceptions.FirebaseError as e:
            raise IdentityUnavailableError(f"Failed to revoke sessions: {e!s}")


async def verify_firebase_token(id_token: str) -> dict:
    """
    Verify a Firebase ID token.

    Tokens issued before the user's sessions were revoked are rejected, so a
    forced sign-out takes effect immediately.

    Args:
        id_token: Firebase ID token from the client

    Returns:
        Decoded token containing user information

    Raises:
        InvalidCredentialsError: If token is invalid, expired or revoked
        IdentityUnavailableError: If Google's signing keys cannot be fetched
    """
    try:
        # clock_skew_seconds=10 to tolerate clock differences
        decoded_token = auth.verify_id_token(id_token, check_revoked=True, clock_skew_seconds=10)
        logger.info("Firebase token verified", uid=decoded_token.get("uid"))
        return decoded_token

    except auth.RevokedIdTokenError as e:
        logger.info("Revoked Firebase ID token presented")
        raise InvalidCredentialsError(f"Firebase ID token revoked: {e!s}", code="TOKEN_REVOKED")
    except auth.UserDisabledError as e:
        logger.info("Firebase ID token of disabled user presented")
        raise InvalidCredentialsError(f"Firebase user disabled: {e!s}", code="USER_DISABLED")
    except auth.InvalidIdTokenError as e:
        logger.warning("Invalid or expired Firebase ID token", error=str(e))
        raise InvalidCredentialsError(f"Invalid Firebase ID token: {e!s}")
    except auth.CertificateFetchError as e:
        logger.error("Firebase certificate fetch failed", error=str(e))
        raise IdentityUnavailableError(f"Token verification unavailable: {e!s}")
    except Exception as e:
        logger.error("Firebase token verification failed", error=str(e))
        raise InvalidCredentialsError(f"Token verification failed: {e!s}")
