"""
API Dependencies

FastAPI dependency injection for authentication and the billing services.

Security: identity tokens are verified cryptographically. Clerk session
tokens (``X-Clerk-Token``) are checked against the Clerk JWKS (RS256);
Supabase tokens (``Authorization: Bearer``) against the Supabase JWKS
(ES256) with HS256 fallback via the JWT secret.

``resolve_user_id_hint`` is the one exception: it reads ``sub`` without
verification and must only feed endpoints whose worst case is acting on
the hinted user's own Stripe objects.
"""

import logging
from typing import Annotated, Optional

import jwt
from jwt import PyJWKClient
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config.settings import Settings, get_settings
from app.domain.billing import BillingSessionService, VerifiedIdentity
from app.domain.reconciliation import SubscriptionReconciler
from app.domain.subscription import PlanCatalog
from app.domain.user_lifecycle import UserLifecycleService
from app.infrastructure.db.dependencies import (
    PaymentRepoDep,
    ProfileRepoDep,
    StorageLocationRepoDep,
    SubscriptionRepoDep,
    WebhookLogRepoDep,
)
from app.infrastructure.notifications.email_service import (
    EmailService,
    get_email_service,
)
from app.infrastructure.payments.stripe_service import (
    StripeService,
    get_stripe_service,
)


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

# Cached JWKS clients, so keys are not re-fetched on every request.
# PyJWKClient caches keys internally and refreshes ~every 10 min.
_jwks_client: Optional[PyJWKClient] = None
_clerk_jwks_client: Optional[PyJWKClient] = None


def _get_jwks_client() -> PyJWKClient:
    """Return a singleton PyJWKClient for the Supabase JWKS endpoint."""
    global _jwks_client
    if _jwks_client is None:
        settings = get_settings()
        jwks_url = f"{settings.supabase_url}/auth/v1/.well-known/jwks.json"
        _jwks_client = PyJWKClient(jwks_url, cache_keys=True)
    return _jwks_client


def _get_clerk_jwks_client() -> Optional[PyJWKClient]:
    """Return a singleton PyJWKClient for Clerk, or None if unconfigured."""
    global _clerk_jwks_client
    if _clerk_jwks_client is None:
        jwks_url = get_settings().clerk_jwks_url
        if not jwks_url:
            return None
        _clerk_jwks_client = PyJWKClient(jwks_url, cache_keys=True)
    return _clerk_jwks_client


def _decode_with_jwks(token: str, issuer: str) -> dict:
    """Verify JWT using Supabase JWKS endpoint (ES256 asymmetric keys)."""
    client = _get_jwks_client()
    signing_key = client.get_signing_key_from_jwt(token)
    return jwt.decode(
        token,
        signing_key.key,
        algorithms=["ES256"],
        issuer=issuer,
        audience="authenticated",
        options={"require": ["exp", "sub", "iss"]},
    )


def _decode_with_secret(token: str, secret: str, issuer: str) -> dict:
    """Verify JWT using HS256 symmetric secret (legacy Supabase signing)."""
    return jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        issuer=issuer,
        audience="authenticated",
        options={"require": ["exp", "sub", "iss"]},
    )


def _decode_clerk_token(token: str) -> dict:
    """
    Verify a Clerk session token (RS256).

    Clerk session tokens carry no audience; the issuer is checked when
    ``CLERK_ISSUER`` is configured.
    """
    client = _get_clerk_jwks_client()
    if client is None:
        raise jwt.InvalidTokenError("Clerk JWKS URL not configured")

    settings = get_settings()
    signing_key = client.get_signing_key_from_jwt(token)
    return jwt.decode(
        token,
        signing_key.key,
        algorithms=["RS256"],
        issuer=settings.clerk_issuer,
        options={"require": ["exp", "sub"], "verify_aud": False},
    )


def _verify_supabase_token(token: str) -> dict:
    """
    Verification strategy (in order):
      1. JWKS (ES256), which follows key rotation automatically.
      2. HS256 with ``SUPABASE_JWT_SECRET`` for legacy signing.

    Raises:
        HTTPException 401: token expired, or invalid under both strategies.
    """
    settings = get_settings()
    issuer = f"{settings.supabase_url}/auth/v1"

    payload: Optional[dict] = None

    # --- Strategy 1: JWKS (ES256) ---
    try:
        payload = _decode_with_jwks(token, issuer)
    except (jwt.exceptions.PyJWKClientError, jwt.InvalidTokenError) as jwks_err:
        logger.debug("JWKS verification failed, trying HS256 fallback: %s", jwks_err)

    # --- Strategy 2: HS256 fallback ---
    if payload is None and settings.supabase_jwt_secret:
        try:
            payload = _decode_with_secret(
                token, settings.supabase_jwt_secret, issuer
            )
        except jwt.ExpiredSignatureError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired",
            )
        except jwt.InvalidTokenError as e:
            logger.warning("HS256 JWT verification also failed: %s", e)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or unverifiable token",
        )
    return payload


async def get_verified_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_clerk_token: Optional[str] = Header(None),
) -> VerifiedIdentity:
    """
    Establish the caller from a verified token.

    A Clerk token, when present, wins; the Supabase bearer token is the
    fallback for clients that have not moved to Clerk yet.

    Raises:
        HTTPException 401: no token, or the presented token is invalid.
    """
    if x_clerk_token:
        try:
            claims = _decode_clerk_token(x_clerk_token)
        except (jwt.exceptions.PyJWKClientError, jwt.InvalidTokenError) as e:
            logger.warning("Clerk token verification failed: %s", e)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid Clerk token",
            )
        return VerifiedIdentity(
            user_id=claims["sub"],
            email=claims.get("email"),
            clerk_user_id=claims["sub"],
        )

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = _verify_supabase_token(credentials.credentials)
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID",
        )

    return VerifiedIdentity(user_id=user_id, email=payload.get("email"))


def _unverified_sub(token: str) -> Optional[str]:
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return None
    return claims.get("sub")


def resolve_user_id_hint(
    body_user_id: Optional[str],
    clerk_token: Optional[str],
    bearer_token: Optional[str],
) -> Optional[str]:
    """
    Best-guess user id for the portal and plan-change endpoints.

    Order: explicit body field, then ``sub`` of the Clerk token, then
    ``sub`` of the bearer token. Tokens are NOT verified here; this value
    is a hint, never an authenticated identity.
    """
    if body_user_id:
        return body_user_id
    for token in (clerk_token, bearer_token):
        if token:
            sub = _unverified_sub(token)
            if sub:
                return sub
    return None


# =============================================================================
# Service providers
# =============================================================================

SettingsDep = Annotated[Settings, Depends(get_settings)]
StripeDep = Annotated[StripeService, Depends(get_stripe_service)]
EmailDep = Annotated[EmailService, Depends(get_email_service)]


def get_subscription_reconciler(
    settings: SettingsDep,
    profiles: ProfileRepoDep,
    subscriptions: SubscriptionRepoDep,
    payments: PaymentRepoDep,
    webhook_log: WebhookLogRepoDep,
    stripe: StripeDep,
    notifier: EmailDep,
) -> SubscriptionReconciler:
    return SubscriptionReconciler(
        profiles=profiles,
        subscriptions=subscriptions,
        payments=payments,
        webhook_log=webhook_log,
        stripe=stripe,
        catalog=PlanCatalog.from_settings(settings),
        notifier=notifier,
    )


def get_billing_service(
    settings: SettingsDep,
    profiles: ProfileRepoDep,
    subscriptions: SubscriptionRepoDep,
    stripe: StripeDep,
) -> BillingSessionService:
    return BillingSessionService(
        profiles=profiles,
        subscriptions=subscriptions,
        stripe=stripe,
        settings=settings,
    )


def get_user_lifecycle_service(
    profiles: ProfileRepoDep,
    subscriptions: SubscriptionRepoDep,
    storage_locations: StorageLocationRepoDep,
    stripe: StripeDep,
) -> UserLifecycleService:
    return UserLifecycleService(
        profiles=profiles,
        subscriptions=subscriptions,
        storage_locations=storage_locations,
        stripe=stripe,
    )


ReconcilerDep = Annotated[SubscriptionReconciler, Depends(get_subscription_reconciler)]
BillingServiceDep = Annotated[BillingSessionService, Depends(get_billing_service)]
UserLifecycleDep = Annotated[UserLifecycleService, Depends(get_user_lifecycle_service)]
IdentityDep = Annotated[VerifiedIdentity, Depends(get_verified_identity)]
