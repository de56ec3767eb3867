"""Credential Vault: OAuth2 connect, encrypted storage and refresh of calendar tokens."""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import requests  # type: ignore

from booking_desk.config import GoogleOAuthConfig
from booking_desk.db.queries import admins as admins_q
from booking_desk.db.queries import integrations as integrations_q
from booking_desk.db.types import CALENDAR_LOCK_NAMESPACE, DatabaseInterface
from booking_desk.engine.crypto import TokenCipher
from booking_desk.engine.locks import KeyedLocks
from booking_desk.errors import (
    CredentialError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from booking_desk.models import GOOGLE_CALENDAR_PROVIDER, CalendarIntegration, utcnow

logger = logging.getLogger(__name__)

# Refresh when the access token expires within this window.
REFRESH_WINDOW = timedelta(minutes=5)
DEFAULT_EXPIRES_IN = 3600
REQUEST_TIMEOUT = 30


@dataclass
class AccessGrant:
    """A decrypted access token that is valid for at least REFRESH_WINDOW."""

    integration_id: str
    access_token: str
    expires_at: Optional[datetime]
    calendar_id: str


class CredentialVault:
    def __init__(
        self,
        db: DatabaseInterface,
        cipher: TokenCipher,
        oauth_config: Optional[GoogleOAuthConfig],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.cipher = cipher
        self.oauth_config = oauth_config
        self.clock = clock
        self._refresh_locks = KeyedLocks()

    def _require_config(self) -> GoogleOAuthConfig:
        if not self.oauth_config:
            raise ValidationError("Google Calendar OAuth client is not configured")
        return self.oauth_config

    def begin_authorization(
        self, admin_id: int, redirect_uri: Optional[str] = None, state: Optional[str] = None
    ) -> str:
        """Build the consent URL the admin is redirected to.

        Offline access with a forced consent prompt so the provider always
        returns a refresh token.
        """
        oauth = self._require_config()
        redirect_uri = redirect_uri or oauth.redirect_uri
        if not redirect_uri:
            raise ValidationError("redirect_uri is required")

        params = {
            "client_id": oauth.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(oauth.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "state": state or f"admin-{admin_id}-{int(time.time() * 1000)}",
        }
        return f"{oauth.auth_uri}?{urlencode(params)}"

    def _post_token(self, data: Dict[str, str]) -> Dict[str, Any]:
        oauth = self._require_config()
        payload = {
            "client_id": oauth.client_id,
            "client_secret": oauth.client_secret,
            **data,
        }
        try:
            response = requests.post(oauth.token_uri, data=payload, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise UpstreamError(f"Token endpoint unreachable: {e}")

        if response.status_code != 200:
            error_code = ""
            try:
                error_code = response.json().get("error", "")
            except ValueError:
                pass
            if error_code in ("invalid_grant", "unauthorized_client"):
                raise CredentialError(
                    f"Authorization rejected by provider ({error_code}); reconnect the calendar"
                )
            raise UpstreamError(
                f"Token request failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        try:
            token_data = response.json()
        except ValueError:
            raise UpstreamError("Token endpoint returned a non-JSON body")
        if not token_data.get("access_token"):
            raise UpstreamError("No access token received from provider")
        return token_data

    def _expiry_from(self, token_data: Dict[str, Any]) -> datetime:
        expires_in = int(token_data.get("expires_in", DEFAULT_EXPIRES_IN))
        return self.clock() + timedelta(seconds=expires_in)

    def complete_authorization(
        self, admin_id: int, code: str, redirect_uri: Optional[str] = None
    ) -> str:
        """Exchange an authorization code and store the encrypted tokens.

        Returns the integration id. Reconnecting reuses the existing row and
        resets its sync state.
        """
        oauth = self._require_config()
        if not code:
            raise ValidationError("Authorization code is required")

        with self.db.transaction() as tx:
            if not admins_q.get_admin(tx, admin_id):
                raise NotFoundError(f"Admin {admin_id} not found")

        token_data = self._post_token(
            {
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri or oauth.redirect_uri or "",
            }
        )
        expires_at = self._expiry_from(token_data)
        encrypted_access = self.cipher.encrypt(token_data["access_token"])
        encrypted_refresh = self.cipher.encrypt_optional(token_data.get("refresh_token"))

        with self.db.transaction() as tx:
            existing = integrations_q.get_integration_for_admin(
                tx, admin_id, GOOGLE_CALENDAR_PROVIDER
            )
            if encrypted_refresh is None and existing:
                encrypted_refresh = existing.get("refresh_token")
            integration_id = integrations_q.upsert_integration(
                tx,
                integration_id=existing["id"] if existing else uuid.uuid4().hex,
                admin_id=admin_id,
                provider=GOOGLE_CALENDAR_PROVIDER,
                access_token=encrypted_access,
                refresh_token=encrypted_refresh,
                token_expires_at=expires_at,
                calendar_id="primary",
                now=self.clock(),
            )

        if encrypted_refresh is None:
            logger.warning(
                f"No refresh token returned for admin {admin_id}; calendar access will lapse at {expires_at.isoformat()}"
            )
        logger.info(f"Stored calendar credentials for admin {admin_id} (integration {integration_id})")
        return integration_id

    def _load(self, integration_id: str) -> CalendarIntegration:
        with self.db.transaction() as tx:
            row = integrations_q.get_integration(tx, integration_id)
        if not row:
            raise NotFoundError(f"Calendar integration not found: {integration_id}")
        return CalendarIntegration.from_row(row)

    def _needs_refresh(self, integration: CalendarIntegration) -> bool:
        if integration.token_expires_at is None:
            return True
        return integration.token_expires_at <= self.clock() + REFRESH_WINDOW

    def _grant(self, integration: CalendarIntegration) -> AccessGrant:
        return AccessGrant(
            integration_id=integration.id,
            access_token=self.cipher.decrypt(integration.access_token),
            expires_at=integration.token_expires_at,
            calendar_id=integration.calendar_id,
        )

    def ensure_valid(self, integration_id: str) -> AccessGrant:
        """Return a usable access token, refreshing it first when close to expiry.

        Concurrent callers for one integration are serialised, in this process
        by a keyed lock and across processes by a store lock held while the
        row is re-read, refreshed and written back. Whoever waits sees the new
        expiry and skips the refresh.

        Raises:
            NotFoundError: unknown integration
            CredentialError: refresh token missing or rejected, or undecryptable
            UpstreamError: any other provider failure; not retried here
        """
        with self._refresh_locks.hold(integration_id):
            integration = self._load(integration_id)
            try:
                if not self._needs_refresh(integration):
                    return self._grant(integration)
                return self._refresh(integration.id, integration.admin_id)
            except CredentialError as e:
                self.record_failure(integration_id, e.message)
                raise

    def _refresh(self, integration_id: str, admin_id: int) -> AccessGrant:
        with self.db.transaction(lock_key=admin_id, namespace=CALENDAR_LOCK_NAMESPACE) as tx:
            row = integrations_q.get_integration(tx, integration_id)
            if not row:
                raise NotFoundError(f"Calendar integration not found: {integration_id}")
            integration = CalendarIntegration.from_row(row)
            if not self._needs_refresh(integration):
                logger.debug(f"Token for integration {integration_id} already refreshed")
                return self._grant(integration)

            refresh_token = self.cipher.decrypt_optional(integration.refresh_token)
            if not refresh_token:
                raise CredentialError(
                    "No refresh token stored for this calendar; reconnect the calendar"
                )

            logger.info(f"Refreshing access token for integration {integration_id}")
            token_data = self._post_token(
                {"refresh_token": refresh_token, "grant_type": "refresh_token"}
            )
            access_token = token_data["access_token"]
            expires_at = self._expiry_from(token_data)
            # Providers usually omit the refresh token on refresh; keep the stored one.
            new_refresh = token_data.get("refresh_token")
            encrypted_refresh = (
                self.cipher.encrypt(new_refresh) if new_refresh else integration.refresh_token
            )
            integrations_q.update_tokens(
                tx,
                integration_id,
                self.cipher.encrypt(access_token),
                encrypted_refresh,
                expires_at,
                self.clock(),
            )

        logger.info(f"Access token refreshed for integration {integration_id}")
        return AccessGrant(
            integration_id=integration_id,
            access_token=access_token,
            expires_at=expires_at,
            calendar_id=integration.calendar_id,
        )

    def record_failure(self, integration_id: str, message: str) -> None:
        with self.db.transaction() as tx:
            integrations_q.mark_error(tx, integration_id, message, self.clock())

    def get_integration_for_admin(self, admin_id: int) -> Optional[CalendarIntegration]:
        with self.db.transaction() as tx:
            row = integrations_q.get_integration_for_admin(
                tx, admin_id, GOOGLE_CALENDAR_PROVIDER
            )
        return CalendarIntegration.from_row(row) if row else None

    def disconnect(self, admin_id: int) -> None:
        """Delete the admin's calendar connection; cached busy intervals go with it."""
        with self.db.transaction() as tx:
            deleted = integrations_q.delete_integration_for_admin(
                tx, admin_id, GOOGLE_CALENDAR_PROVIDER
            )
        if not deleted:
            raise NotFoundError(f"No calendar connected for admin {admin_id}")
        logger.info(f"Disconnected calendar for admin {admin_id}")
