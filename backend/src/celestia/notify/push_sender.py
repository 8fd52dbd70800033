"""Push delivery through FCM HTTP v1."""

from typing import Any

import httpx
from google.auth.transport.requests import Request
from google.oauth2 import service_account
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from celestia.logging_config import get_logger
from celestia.settings import settings

logger = get_logger(__name__)

# Scope required by FCM HTTP v1
_FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"


class NotificationError(Exception):
    """Base class for notification failures."""


class NoPushEndpointError(NotificationError):
    """The user has no active push token."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"No active push endpoint for user {user_id}")


class PushDeliveryError(NotificationError):
    """The push service refused or failed to deliver a message."""


class TokenUnregisteredError(PushDeliveryError):
    """The device token is no longer valid and should be revoked."""


def _v1_endpoint(project_id: str) -> str:
    return f"https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"


class FcmPushSender:
    """Sends one message to one device token."""

    def __init__(
        self,
        project_id: str | None = None,
        credentials_path: str | None = None,
        timeout: float | None = None,
        client: httpx.Client | None = None,
    ):
        self.project_id = project_id or settings.firebase_project_id
        self.credentials_path = credentials_path or settings.google_application_credentials
        self.timeout = timeout or settings.push_timeout_seconds
        self.client = client or httpx.Client(timeout=self.timeout)
        self._credentials = None

    def _access_token(self) -> str:
        """Get an OAuth2 access token from the service account, refreshing when stale."""
        if self._credentials is None:
            self._credentials = service_account.Credentials.from_service_account_file(
                self.credentials_path, scopes=[_FCM_SCOPE]
            )
        if not self._credentials.valid:
            self._credentials.refresh(Request())
        return self._credentials.token

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(settings.push_max_attempts),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
    )
    def _post(self, url: str, headers: dict[str, str], payload: dict[str, Any]) -> httpx.Response:
        return self.client.post(url, headers=headers, json=payload)

    def send(self, token: str, title: str, body: str, data: dict[str, Any] | None = None) -> None:
        """Deliver a notification to a device.

        Raises:
            TokenUnregisteredError: FCM no longer knows the token
            PushDeliveryError: Any other delivery failure
        """
        if not self.project_id or not self.credentials_path:
            raise PushDeliveryError("FCM not configured")

        payload = {
            "message": {
                "token": token,
                "notification": {"title": title, "body": body},
                # FCM requires string values in the data map
                "data": {key: str(value) for key, value in (data or {}).items()},
                "android": {"priority": "HIGH"},
                "apns": {"headers": {"apns-priority": "10"}},
            }
        }
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json; UTF-8",
        }

        try:
            response = self._post(_v1_endpoint(self.project_id), headers, payload)
        except httpx.HTTPError as e:
            raise PushDeliveryError(f"FCM request failed: {e}") from e

        if response.status_code == 404 or "UNREGISTERED" in response.text:
            raise TokenUnregisteredError(f"Token {token[:12]}... is unregistered")
        if response.status_code >= 400:
            raise PushDeliveryError(f"FCM returned {response.status_code}: {response.text[:200]}")

        logger.debug("fcm_push_sent", token_prefix=token[:12], status=response.status_code)
