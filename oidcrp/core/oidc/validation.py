"""ID token validation.

Verifies the signature of an ID token against the IdP's published JWKS and
checks the standard claims, in this order: format, algorithm, signature,
subject, issuer, audience, validity window and (when one is expected) nonce.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import jwt
from jwt import PyJWK, PyJWKClient, PyJWKSet
from jwt.exceptions import PyJWKClientError, PyJWKSetError

from oidcrp.core.errors import InvalidIdToken

logger = logging.getLogger(__name__)

DEFAULT_CLOCK_SKEW_SECONDS = 60


class ValidationStatus(StrEnum):
    """Status of a validation check."""

    VALID = "valid"
    INVALID = "invalid"
    SKIPPED = "skipped"


@dataclass
class ValidationCheck:
    """Result of a single validation check."""

    name: str
    status: ValidationStatus
    expected: str | None = None
    actual: str | None = None
    message: str = ""


@dataclass(frozen=True)
class IDTokenClaims:
    """Claims of an ID token that passed every check."""

    subject: str
    issuer: str
    audience: tuple[str, ...]
    issued_at: datetime
    expires_at: datetime
    nonce: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass
class TokenValidationResult:
    """Outcome of validating one token.

    ``claims`` is only set when every check passed.
    """

    checks: list[ValidationCheck] = field(default_factory=list)
    claims: IDTokenClaims | None = None

    @property
    def is_valid(self) -> bool:
        return self.claims is not None

    @property
    def failed_check(self) -> ValidationCheck | None:
        for check in self.checks:
            if check.status == ValidationStatus.INVALID:
                return check
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "is_valid": self.is_valid,
            "checks": [
                {
                    "name": c.name,
                    "status": c.status.value,
                    "expected": c.expected,
                    "actual": c.actual,
                    "message": c.message,
                }
                for c in self.checks
            ],
        }


class JWKSManager:
    """Fetches and caches the JSON Web Key Set of one IdP.

    Fetching and parsing go through :class:`jwt.PyJWKClient`; this class
    decides when to fetch. Keys are reloaded when a token names an unknown
    ``kid`` or when the cached set is older than ``lifespan``, at most once
    per ``min_reload_interval`` whether the attempt succeeds or not. A failed
    reload keeps the previously fetched set usable.
    """

    def __init__(
        self,
        jwks_uri: str,
        timeout: float = 10.0,
        lifespan: float = 3600.0,
        min_reload_interval: float = 30.0,
    ) -> None:
        """Initialize JWKS manager.

        Args:
            jwks_uri: URI to fetch JWKS from.
            timeout: HTTP timeout in seconds.
            lifespan: Seconds after which cached keys are refreshed.
            min_reload_interval: Minimum seconds between fetch attempts.
        """
        self.jwks_uri = jwks_uri
        self.timeout = timeout
        self.lifespan = lifespan
        self.min_reload_interval = min_reload_interval
        # The client's own cache is cleared by a failed fetch, so the last set is kept here
        self.jwks_client = PyJWKClient(jwks_uri, cache_jwk_set=False, timeout=timeout)
        self._key_set: PyJWKSet | None = None
        self._loaded_at: float | None = None
        self._attempted_at: float | None = None
        self._lock = threading.Lock()

    def get_signing_key(self, kid: str | None) -> PyJWK:
        """Get the key a token was signed with.

        Args:
            kid: Key id from the token header, if any.

        Returns:
            The matching key.

        Raises:
            InvalidIdToken: If no matching key can be found.
        """
        key = self._find(kid)
        if key is None or self._is_stale():
            with self._lock:
                # Another thread may have reloaded while we waited
                key = self._find(kid)
                if (key is None or self._is_stale()) and self._may_reload():
                    self._reload()
                    key = self._find(kid)

        if key is None:
            raise InvalidIdToken("signature", f"No signing key with kid '{kid}' in JWKS")
        return key

    def signing_keys(self) -> list[PyJWK]:
        """Signing keys of the cached set."""
        if self._key_set is None:
            return []
        return [key for key in self._key_set.keys if key.public_key_use in ("sig", None)]

    def _find(self, kid: str | None) -> PyJWK | None:
        keys = self.signing_keys()
        if kid is not None:
            return next((key for key in keys if key.key_id == kid), None)
        # Without a kid the key set must be unambiguous
        if len(keys) == 1:
            return keys[0]
        return None

    def _is_stale(self) -> bool:
        return self._loaded_at is None or time.monotonic() - self._loaded_at > self.lifespan

    def _may_reload(self) -> bool:
        return self._attempted_at is None or time.monotonic() - self._attempted_at >= self.min_reload_interval

    def _reload(self) -> None:
        self._attempted_at = time.monotonic()
        try:
            key_set = self.jwks_client.get_jwk_set(refresh=True)
        except (PyJWKClientError, PyJWKSetError, ValueError) as e:
            if self._key_set is not None:
                logger.warning(f"JWKS reload from {self.jwks_uri} failed, keeping cached keys: {e}")
                return
            raise InvalidIdToken("signature", f"Could not fetch JWKS from {self.jwks_uri}: {e}") from e
        self._key_set = key_set
        self._loaded_at = time.monotonic()
        logger.debug(f"Loaded {len(self.signing_keys())} signing keys from {self.jwks_uri}")


_managers: dict[tuple[str, float], JWKSManager] = {}
_managers_lock = threading.Lock()


def get_jwks_manager(jwks_uri: str, timeout: float = 10.0) -> JWKSManager:
    """Get the shared JWKS manager for a key-set URL and timeout."""
    with _managers_lock:
        manager = _managers.get((jwks_uri, timeout))
        if manager is None:
            manager = JWKSManager(jwks_uri, timeout=timeout)
            _managers[(jwks_uri, timeout)] = manager
        return manager


class TokenValidator:
    """Validates ID tokens issued for one connection."""

    def __init__(
        self,
        jwks_manager: JWKSManager,
        issuer: str,
        client_id: str,
        algorithm: str = "RS256",
        clock_skew_seconds: int = DEFAULT_CLOCK_SKEW_SECONDS,
    ) -> None:
        """Initialize the token validator.

        Args:
            jwks_manager: Source of the IdP's signing keys.
            issuer: Expected issuer (iss claim), compared exactly.
            client_id: Client id that must appear in the audience.
            algorithm: The only signature algorithm accepted.
            clock_skew_seconds: Leeway applied to iat and exp.
        """
        self.jwks_manager = jwks_manager
        self.issuer = issuer
        self.client_id = client_id
        self.algorithm = algorithm
        self.clock_skew_seconds = clock_skew_seconds

    def validate(self, token: str, nonce: str | None = None) -> IDTokenClaims:
        """Validate a token and return its claims.

        Raises:
            InvalidIdToken: Naming the first check that failed.
        """
        result = self.validate_token(token, nonce=nonce)
        if result.claims is None:
            failed = result.failed_check
            name = failed.name if failed else "unknown"
            message = failed.message if failed else "validation incomplete"
            raise InvalidIdToken(name, message)
        return result.claims

    def validate_token(self, token: str, nonce: str | None = None) -> TokenValidationResult:
        """Run every check, stopping at the first failure.

        Args:
            token: Compact JWS ID token.
            nonce: Expected nonce, if one was bound to the flow.

        Returns:
            TokenValidationResult with the checks performed.
        """
        result = TokenValidationResult()
        checks = result.checks

        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as e:
            checks.append(ValidationCheck("format", ValidationStatus.INVALID, message=f"Invalid JWT format: {e}"))
            return result

        alg = header.get("alg")
        if alg != self.algorithm:
            checks.append(
                ValidationCheck(
                    "algorithm",
                    ValidationStatus.INVALID,
                    expected=self.algorithm,
                    actual=str(alg),
                    message="Unexpected signature algorithm",
                )
            )
            return result
        checks.append(ValidationCheck("algorithm", ValidationStatus.VALID, actual=alg))

        signature_check, payload = self._verify_signature(token, header.get("kid"))
        checks.append(signature_check)
        if payload is None:
            return result

        for check in self._claim_checks(payload, nonce):
            checks.append(check)
            if check.status == ValidationStatus.INVALID:
                return result

        aud = payload["aud"]
        result.claims = IDTokenClaims(
            subject=payload["sub"],
            issuer=payload["iss"],
            audience=tuple(aud) if isinstance(aud, list) else (aud,),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=UTC),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=UTC),
            nonce=payload.get("nonce"),
            raw=payload,
        )
        return result

    def _verify_signature(self, token: str, kid: str | None) -> tuple[ValidationCheck, dict[str, Any] | None]:
        try:
            signing_key = self.jwks_manager.get_signing_key(kid)
        except InvalidIdToken as e:
            return ValidationCheck("signature", ValidationStatus.INVALID, message=e.message), None

        try:
            # Claims are checked separately with our own leeway
            payload = jwt.decode(
                token,
                signing_key.key,
                algorithms=[self.algorithm],
                options={
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                    "verify_aud": False,
                    "verify_iss": False,
                },
            )
        except jwt.InvalidSignatureError:
            return (
                ValidationCheck(
                    "signature",
                    ValidationStatus.INVALID,
                    message="Signature verification failed - token may have been tampered with",
                ),
                None,
            )
        except jwt.PyJWTError as e:
            return ValidationCheck("signature", ValidationStatus.INVALID, message=f"Could not verify token: {e}"), None

        return (
            ValidationCheck(
                "signature",
                ValidationStatus.VALID,
                message=f"Signature verified using key '{signing_key.key_id or 'unknown'}'",
            ),
            payload,
        )

    def _claim_checks(self, payload: dict[str, Any], nonce: str | None) -> list[ValidationCheck]:
        """Check claims in order; the caller stops at the first INVALID."""
        checks: list[ValidationCheck] = []
        now = datetime.now(UTC).timestamp()

        sub = payload.get("sub")
        checks.append(
            ValidationCheck(
                "subject",
                ValidationStatus.VALID if isinstance(sub, str) and sub else ValidationStatus.INVALID,
                actual=str(sub) if sub else "(not present)",
                message="Subject claim present" if sub else "Subject claim missing",
            )
        )

        iss = payload.get("iss")
        checks.append(
            ValidationCheck(
                "issuer",
                ValidationStatus.VALID if iss == self.issuer else ValidationStatus.INVALID,
                expected=self.issuer,
                actual=str(iss) if iss else "(not present)",
                message="Issuer matches" if iss == self.issuer else "Issuer mismatch",
            )
        )

        aud = payload.get("aud")
        audiences = aud if isinstance(aud, list) else [aud] if aud else []
        azp = payload.get("azp")
        aud_valid = self.client_id in audiences and (azp is None or azp == self.client_id)
        checks.append(
            ValidationCheck(
                "audience",
                ValidationStatus.VALID if aud_valid else ValidationStatus.INVALID,
                expected=self.client_id,
                actual=", ".join(str(a) for a in audiences) or "(not present)",
                message="Audience matches" if aud_valid else "Audience mismatch",
            )
        )

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            checks.append(ValidationCheck("expiration", ValidationStatus.INVALID, message="Expiration claim missing"))
        else:
            expired = now > exp + self.clock_skew_seconds
            checks.append(
                ValidationCheck(
                    "expiration",
                    ValidationStatus.INVALID if expired else ValidationStatus.VALID,
                    actual=datetime.fromtimestamp(exp, tz=UTC).isoformat(),
                    message="Token has expired" if expired else "Token is not expired",
                )
            )

        iat = payload.get("iat")
        if not isinstance(iat, (int, float)):
            checks.append(ValidationCheck("issued_at", ValidationStatus.INVALID, message="Issued-at claim missing"))
        else:
            future = now < iat - self.clock_skew_seconds
            checks.append(
                ValidationCheck(
                    "issued_at",
                    ValidationStatus.INVALID if future else ValidationStatus.VALID,
                    actual=datetime.fromtimestamp(iat, tz=UTC).isoformat(),
                    message="Token issued in the future (clock skew?)" if future else "Issue time is valid",
                )
            )

        token_nonce = payload.get("nonce")
        if nonce is None:
            checks.append(ValidationCheck("nonce", ValidationStatus.SKIPPED, message="No nonce bound to this flow"))
        else:
            checks.append(
                ValidationCheck(
                    "nonce",
                    ValidationStatus.VALID if token_nonce == nonce else ValidationStatus.INVALID,
                    expected=nonce,
                    actual=str(token_nonce) if token_nonce else "(not present)",
                    message="Nonce matches" if token_nonce == nonce else "Nonce mismatch or missing",
                )
            )

        return checks
