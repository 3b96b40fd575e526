"""
Google Drive Storage Implementation

DESIGN DECISION: Google Drive is the first cloud backend because:
1. The user owns the data in their own account
2. Cross-device access with no server of ours
3. The appDataFolder space keeps the file out of the user's Drive UI
4. Plain JSON file - easy to inspect or move elsewhere later

TRADEOFFS:
- No optimistic concurrency: two devices saving at once means the
  last writer wins
- Access tokens are never silently refreshed; once the API rejects a
  token the user has to consent again. A stored token is only restored
  after a restart while it is younger than the session max age
- The file is NOT encrypted client-side; encryption at rest is Google's

Authentication lifecycle:
    unauthenticated --consent--> token acquired --401--> unauthenticated
    stored token --restart, younger than max age--> token acquired
"""

import asyncio
import time
from typing import Any, Callable, Optional

import requests
from google.auth.transport.requests import AuthorizedSession
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from peasant_budget.config import GoogleDriveSettings, get_settings
from peasant_budget.errors import (
    AuthenticationFailedError,
    DataValidationError,
    ProviderUnavailableError,
    RemoteStorageError,
    RemoteUnreachableError,
    StorageError,
    TokenExpiredError,
    TransientRemoteError,
)
from peasant_budget.models.budget import BudgetDataEnvelope, migrate_budget_data
from peasant_budget.models.storage import (
    ProviderDescriptor,
    ProviderIdentity,
    SyncState,
)
from peasant_budget.services.kvstore import KeyValueStore
from peasant_budget.services.storage.interface import StorageProvider


PROVIDER_ID = "google-drive"

SCOPES = [
    "https://www.googleapis.com/auth/drive.appdata",
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]

DRIVE_FILES_URL = "https://www.googleapis.com/drive/v3/files"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"
AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
APP_DATA_FOLDER = "appDataFolder"


ConsentFlow = Callable[[GoogleDriveSettings], Credentials]
SessionFactory = Callable[[Credentials], requests.Session]


def run_installed_app_consent(settings: GoogleDriveSettings) -> Credentials:
    """
    Interactive consent through the user's browser.

    Blocks until the user approves or denies access.
    """
    flow = InstalledAppFlow.from_client_config(
        {
            "installed": {
                "client_id": settings.client_id,
                "client_secret": settings.client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
            }
        },
        scopes=SCOPES,
    )
    return flow.run_local_server(port=0, prompt="consent")


_transient_retry = retry(
    retry=retry_if_exception_type(TransientRemoteError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


class GoogleDriveClient:
    """
    Low-level Drive v3 REST wrapper.

    Maps HTTP failures onto the storage error taxonomy and retries the
    transient ones. Every retried operation is idempotent.
    """

    def __init__(self, session: requests.Session, timeout: float = 20.0):
        self._session = session
        self._timeout = timeout

    def _request(
        self,
        method: str,
        url: str,
        allowed_statuses: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> requests.Response:
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise RemoteUnreachableError(f"Could not reach Google Drive: {e}") from e

        status = response.status_code
        if status in allowed_statuses or status < 400:
            return response
        if status == 401:
            raise TokenExpiredError("Google session expired. Please sign in again.")
        if status == 429 or status >= 500:
            raise TransientRemoteError(f"Google Drive is temporarily unavailable ({status})")
        raise RemoteStorageError(self._error_message(response))

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            message = response.json().get("error", {}).get("message")
        except ValueError:
            message = None
        return message or f"Google Drive request failed: {response.status_code}"

    def _find_file(self, name: str) -> Optional[str]:
        response = self._request(
            "GET",
            DRIVE_FILES_URL,
            params={
                "spaces": APP_DATA_FOLDER,
                "q": f"name='{name}' and trashed=false",
                "fields": "files(id,name,modifiedTime)",
                "orderBy": "modifiedTime desc",
            },
        )
        files = response.json().get("files") or []
        return files[0]["id"] if files else None

    @_transient_retry
    def find_file(self, name: str) -> Optional[str]:
        """Id of the named file in the app data folder, or None."""
        return self._find_file(name)

    @_transient_retry
    def ensure_file(self, name: str) -> str:
        """
        Id of the named file, creating it if it doesn't exist.

        Looks the file up again on every attempt, so a retry after a
        lost create response never makes a second file.
        """
        file_id = self._find_file(name)
        if file_id:
            return file_id

        response = self._request(
            "POST",
            DRIVE_FILES_URL,
            params={"fields": "id"},
            json={
                "name": name,
                "parents": [APP_DATA_FOLDER],
                "mimeType": "application/json",
            },
        )
        return response.json()["id"]

    @_transient_retry
    def upload(self, file_id: str, content: str) -> None:
        """Replace the file's content."""
        self._request(
            "PATCH",
            f"{DRIVE_UPLOAD_URL}/{file_id}",
            params={"uploadType": "media"},
            data=content.encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )

    @_transient_retry
    def read(self, file_id: str) -> Any:
        """Parsed JSON content of the file."""
        response = self._request(
            "GET",
            f"{DRIVE_FILES_URL}/{file_id}",
            params={"alt": "media"},
        )
        return response.json()

    @_transient_retry
    def delete_file(self, file_id: str) -> None:
        # Already gone is as good as deleted
        self._request("DELETE", f"{DRIVE_FILES_URL}/{file_id}", allowed_statuses=(404,))

    def get_userinfo(self) -> dict:
        return self._request("GET", USERINFO_URL).json()

    def revoke(self, token: str) -> None:
        self._request(
            "POST",
            REVOKE_URL,
            params={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )


class GoogleDriveProvider(StorageProvider):
    """
    Storage provider over a single JSON file in the user's Drive app data folder.

    The file id is remembered for the rest of the session once found or
    created, so repeated saves update the same remote object.
    """

    def __init__(
        self,
        settings: Optional[GoogleDriveSettings] = None,
        token_store: Optional[KeyValueStore] = None,
        consent_flow: ConsentFlow = run_installed_app_consent,
        session_factory: SessionFactory = AuthorizedSession,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__()
        self._settings = settings or get_settings().google_drive
        self._token_store = token_store
        self._consent_flow = consent_flow
        self._session_factory = session_factory
        self._clock = clock

        self._credentials: Optional[Credentials] = None
        self._token_acquired_at: Optional[float] = None
        self._client: Optional[GoogleDriveClient] = None
        self._file_id: Optional[str] = None
        self._identity: Optional[ProviderIdentity] = None
        self._file_lock = asyncio.Lock()

    @property
    def provider_id(self) -> str:
        return PROVIDER_ID

    # -------------------------------------------------------------------------
    # Token lifecycle
    # -------------------------------------------------------------------------

    def _adopt_credentials(self, credentials: Credentials, acquired_at: float) -> None:
        self._credentials = credentials
        self._token_acquired_at = acquired_at
        self._client = GoogleDriveClient(
            self._session_factory(credentials),
            timeout=self._settings.request_timeout_seconds,
        )

    def _drop_token(self) -> None:
        """Forget the held token; the user has to consent again."""
        self._credentials = None
        self._token_acquired_at = None
        self._client = None
        if self._token_store is not None:
            self._token_store.remove(self._settings.token_key)
            self._token_store.remove(self._settings.token_time_key)

    def _persist_token(self) -> None:
        if self._token_store is None or self._credentials is None:
            return
        self._token_store.set(self._settings.token_key, self._credentials.token)
        self._token_store.set(self._settings.token_time_key, str(self._token_acquired_at))

    def _restore_token(self) -> bool:
        if self._token_store is None:
            return False
        token = self._token_store.get(self._settings.token_key)
        acquired_at = self._token_store.get(self._settings.token_time_key)
        if not token or not acquired_at:
            return False

        try:
            age = self._clock() - float(acquired_at)
        except ValueError:
            age = None
        if age is None or age >= self._settings.token_max_age_seconds:
            self._logger.info("stored_token_expired")
            self._drop_token()
            return False

        self._adopt_credentials(Credentials(token=token), float(acquired_at))
        self._logger.info(
            "token_restored",
            age_seconds=round(age),
            remember_session=self._settings.remember_session,
        )
        return True

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    def get_descriptor(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            id=PROVIDER_ID,
            name="Google Drive",
            description="Store data in your Google Drive. Syncs across all your devices.",
            icon="cloud",
            requires_auth=True,
            supports_sync=True,
            supports_encryption=False,
        )

    async def is_available(self) -> bool:
        return bool(self._settings.client_id)

    async def is_authenticated(self) -> bool:
        # A held token stays valid until the API rejects it with a 401;
        # the max age only gates restoring a stored token.
        if self._credentials is not None:
            return True
        return self._restore_token()

    async def authenticate(self) -> bool:
        if not await self.is_available():
            self._update_sync_status(
                SyncState.ERROR,
                ProviderUnavailableError(
                    "Google Drive is not configured. Set GOOGLE_DRIVE_CLIENT_ID."
                ),
            )
            return False

        self._update_sync_status(SyncState.SYNCING)
        try:
            credentials = await asyncio.to_thread(self._consent_flow, self._settings)
        except Exception as e:
            self._logger.error("authentication_failed", error=str(e))
            self._update_sync_status(
                SyncState.ERROR,
                AuthenticationFailedError(f"Google sign-in failed: {e}"),
            )
            return False

        self._adopt_credentials(credentials, self._clock())
        # A different account may have signed in
        self._file_id = None
        self._persist_token()

        try:
            info = await asyncio.to_thread(self._client.get_userinfo)
            self._identity = ProviderIdentity(
                name=info.get("name"),
                email=info.get("email"),
                avatar_url=info.get("picture"),
            )
        except StorageError as e:
            self._logger.warning("userinfo_failed", error=str(e))

        self._logger.info("authentication_succeeded")
        self._update_sync_status(SyncState.SYNCED)
        return True

    async def sign_out(self) -> None:
        if self._credentials is not None and self._client is not None:
            try:
                await asyncio.to_thread(self._client.revoke, self._credentials.token)
            except StorageError as e:
                self._logger.warning("token_revocation_failed", error=str(e))

        self._drop_token()
        self._file_id = None
        self._identity = None
        self._update_sync_status(SyncState.IDLE)
        self._logger.info("signed_out")

    async def get_identity(self) -> Optional[ProviderIdentity]:
        return self._identity

    async def _require_client(self) -> GoogleDriveClient:
        if not await self.is_authenticated():
            raise AuthenticationFailedError("Not signed in to Google Drive")
        return self._client

    def _record_failure(self, operation: str, error: Exception) -> None:
        if isinstance(error, TokenExpiredError):
            self._drop_token()
        if isinstance(error, RemoteUnreachableError):
            self._logger.warning(f"{operation}_offline", error=str(error))
            self._update_sync_status(SyncState.OFFLINE, error)
            return
        if not isinstance(error, StorageError):
            self._logger.exception(f"{operation}_failed")
            error = StorageError(f"Failed to {operation} data: {error}")
        else:
            self._logger.error(f"{operation}_failed", error=str(error))
        self._update_sync_status(SyncState.ERROR, error)

    async def load(self) -> Optional[BudgetDataEnvelope]:
        self._update_sync_status(SyncState.SYNCING)

        try:
            client = await self._require_client()
            file_id = await asyncio.to_thread(client.find_file, self._settings.file_name)
            if file_id is None:
                self._logger.info("no_existing_data")
                self._update_sync_status(SyncState.SYNCED)
                return None
            self._file_id = file_id

            raw = await asyncio.to_thread(client.read, file_id)
            try:
                envelope = migrate_budget_data(raw)
            except ValueError as e:
                raise DataValidationError(f"Remote budget data is corrupted: {e}") from e
        except Exception as e:
            self._record_failure("load", e)
            return None

        self._logger.info(
            "data_loaded",
            file_id=file_id,
            format_version=envelope.format_version,
            transaction_count=envelope.transaction_count,
        )
        self._update_sync_status(SyncState.SYNCED)
        return envelope

    async def save(self, envelope: BudgetDataEnvelope) -> bool:
        self._update_sync_status(SyncState.SYNCING)

        try:
            client = await self._require_client()
            content = envelope.stamped(PROVIDER_ID).to_json()

            async with self._file_lock:
                if self._file_id is None:
                    self._file_id = await asyncio.to_thread(
                        client.ensure_file, self._settings.file_name
                    )
                file_id = self._file_id

            try:
                await asyncio.to_thread(client.upload, file_id, content)
            except StorageError:
                # Look the file up again next time in case it was removed remotely
                self._file_id = None
                raise
        except Exception as e:
            self._record_failure("save", e)
            return False

        self._logger.info(
            "data_saved",
            file_id=file_id,
            transaction_count=envelope.transaction_count,
        )
        self._update_sync_status(SyncState.SYNCED)
        return True

    async def delete(self) -> bool:
        try:
            client = await self._require_client()
            file_id = self._file_id or await asyncio.to_thread(
                client.find_file, self._settings.file_name
            )
            if file_id is None:
                self._logger.info("no_file_to_delete")
            else:
                await asyncio.to_thread(client.delete_file, file_id)
        except Exception as e:
            self._record_failure("delete", e)
            return False

        self._file_id = None
        self._logger.info("data_deleted")
        self._update_sync_status(SyncState.IDLE)
        return True
