"""Google Drive storage for finished archives.

Talks to the OAuth token endpoint and the Drive v3 REST API directly over
requests. An OAuthSession owns the refresh token; DriveClient refreshes it
before every upload, creates the file through a resumable upload session and
opens it to anyone with the link.
"""
import enum
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Iterator, Optional
from urllib.parse import urlencode

import requests

from errors import ReauthRequired, TokenRefreshFailed, UploadFailed

logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
FILES_URL = "https://www.googleapis.com/drive/v3/files"
DRIVE_SCOPE = "https://www.googleapis.com/auth/drive.file"
PUBLIC_DOWNLOAD_URL = "https://drive.google.com/uc?id={file_id}&export=download"

# token endpoint error codes meaning the refresh token itself is no good
REAUTH_ERRORS = {"invalid_grant", "unauthorized_client"}
DOWNLOAD_CHUNK_SIZE = 64 * 1024
ZIP_MIME_TYPE = "application/zip"


class TokenState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: float

    @property
    def expired(self) -> bool:
        return time.time() >= self.expires_at


@dataclass(frozen=True)
class RemoteObject:
    file_id: str
    name: str

    @property
    def public_url(self) -> str:
        return PUBLIC_DOWNLOAD_URL.format(file_id=self.file_id)


class RemoteDownload:
    """An open streaming read of a Drive file."""

    def __init__(self, response, filename: str):
        self._response = response
        self.filename = filename
        self.content_type = response.headers.get("Content-Type") or ZIP_MIME_TYPE
        self.content_length = response.headers.get("Content-Length")

    def iter_bytes(self, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_content(chunk_size=chunk_size):
                if chunk:
                    yield chunk
        finally:
            self.close()

    def close(self):
        self._response.close()


def _error_code(response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, str):
            return error
        if isinstance(error, dict):
            return error.get("status") or error.get("message")
    return None


class OAuthSession:
    """OAuth credentials for one Google account.

    The refresh token is fixed at construction and only replaced by a
    successful authorization-code exchange.
    """

    def __init__(self, client_id, client_secret, redirect_uri, refresh_token, http=None, timeout=30.0):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._refresh_token = refresh_token
        self._token: Optional[AccessToken] = None
        self._lock = threading.Lock()
        self.http = http or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings, http=None):
        return cls(
            settings.client_id,
            settings.client_secret,
            settings.redirect_uri,
            settings.refresh_token,
            http=http,
            timeout=settings.http_timeout_seconds,
        )

    @property
    def refresh_token(self) -> str:
        return self._refresh_token

    @property
    def state(self) -> TokenState:
        token = self._token
        if token is None or token.expired:
            return TokenState.UNAUTHENTICATED
        return TokenState.AUTHENTICATED

    def consent_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": DRIVE_SCOPE,
            "access_type": "offline",
            "prompt": "consent",
        }
        if state:
            params["state"] = state
        return f"{AUTH_URL}?{urlencode(params)}"

    def _post_token(self, data):
        try:
            return self.http.post(TOKEN_URL, data=data, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TokenRefreshFailed(f"Could not reach the Google token endpoint: {e}") from e

    def refresh(self) -> AccessToken:
        """Exchanges the refresh token for a new access token."""
        with self._lock:
            self._token = None
            response = self._post_token({
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self._refresh_token,
                "grant_type": "refresh_token",
            })

            error = _error_code(response) if response.status_code >= 400 else None
            if response.status_code == 401 or error in REAUTH_ERRORS:
                logger.warning(f"Refresh token rejected ({response.status_code}, {error}); consent required.")
                raise ReauthRequired(
                    "Google Drive access has expired. Please grant access again.",
                    consent_url=self.consent_url(),
                )
            if response.status_code >= 400:
                raise TokenRefreshFailed(f"Token refresh failed with HTTP {response.status_code} ({error or 'no details'}).")

            try:
                body = response.json()
                token = AccessToken(
                    value=body["access_token"],
                    expires_at=time.time() + float(body.get("expires_in", 3600)),
                )
            except (ValueError, KeyError, TypeError) as e:
                raise TokenRefreshFailed("Token endpoint returned an unexpected response.") from e

            self._token = token
            logger.info("Successfully refreshed access token")
            return token

    def exchange_code(self, code: str) -> str:
        """Completes the consent flow and adopts the new refresh token."""
        response = self._post_token({
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "code": code,
            "grant_type": "authorization_code",
        })
        if response.status_code >= 400:
            raise TokenRefreshFailed(
                f"Authorization code exchange failed with HTTP {response.status_code} ({_error_code(response) or 'no details'})."
            )
        try:
            body = response.json()
            refresh_token = body["refresh_token"]
            access_token = AccessToken(body["access_token"], time.time() + float(body.get("expires_in", 3600)))
        except (ValueError, KeyError, TypeError) as e:
            raise TokenRefreshFailed("Google did not return a refresh token; revoke access and try again.") from e

        with self._lock:
            self._refresh_token = refresh_token
            self._token = access_token
        logger.warning("Obtained a new refresh token; set REFRESH_TOKEN to keep it across restarts.")
        return refresh_token


class DriveClient:
    def __init__(self, oauth: OAuthSession, folder_id: str, http=None, timeout=30.0, upload_timeout=600.0):
        self.oauth = oauth
        self.folder_id = folder_id
        self.http = http or requests.Session()
        self.timeout = timeout
        self.upload_timeout = upload_timeout

    @classmethod
    def from_settings(cls, settings, oauth: OAuthSession, http=None):
        return cls(
            oauth,
            settings.drive_folder_id,
            http=http,
            timeout=settings.http_timeout_seconds,
            upload_timeout=settings.upload_timeout_seconds,
        )

    @staticmethod
    def _auth(token: AccessToken, extra=None):
        headers = {"Authorization": f"Bearer {token.value}"}
        if extra:
            headers.update(extra)
        return headers

    def _start_upload_session(self, token, name, size) -> str:
        metadata = {"name": name, "parents": [self.folder_id], "mimeType": ZIP_MIME_TYPE}
        response = self.http.post(
            UPLOAD_URL,
            params={"uploadType": "resumable", "fields": "id,name"},
            json=metadata,
            headers=self._auth(token, {
                "X-Upload-Content-Type": ZIP_MIME_TYPE,
                "X-Upload-Content-Length": str(size),
            }),
            timeout=self.timeout,
        )
        response.raise_for_status()
        location = response.headers.get("Location")
        if not location:
            raise UploadFailed("Google Drive did not return an upload session.")
        return location

    def _send_body(self, token, session_url, local_path, size) -> str:
        with open(local_path, "rb") as f:
            response = self.http.put(
                session_url,
                data=f,
                headers=self._auth(token, {"Content-Type": ZIP_MIME_TYPE, "Content-Length": str(size)}),
                timeout=(self.timeout, self.upload_timeout),
            )
        response.raise_for_status()
        return response.json()["id"]

    def make_public(self, token: AccessToken, file_id: str):
        response = self.http.post(
            f"{FILES_URL}/{file_id}/permissions",
            json={"role": "reader", "type": "anyone"},
            headers=self._auth(token),
            timeout=self.timeout,
        )
        response.raise_for_status()

    def upload(self, local_path: str, name: str) -> RemoteObject:
        """Uploads local_path as a publicly readable Drive file called name."""
        token = self.oauth.refresh()
        try:
            size = os.path.getsize(local_path)
            session_url = self._start_upload_session(token, name, size)
            file_id = self._send_body(token, session_url, local_path, size)
            self.make_public(token, file_id)
        except UploadFailed:
            raise
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            raise UploadFailed(f"Google Drive rejected the upload (HTTP {status}).") from e
        except requests.exceptions.RequestException as e:
            raise UploadFailed(f"Network error while uploading to Google Drive: {e}") from e
        except OSError as e:
            raise UploadFailed(f"Could not read the archive for upload: {e}") from e
        except (ValueError, KeyError) as e:
            raise UploadFailed("Google Drive returned an unexpected response.") from e

        logger.info(f"File uploaded to Drive: {file_id}")
        return RemoteObject(file_id=file_id, name=name)

    def open_download(self, remote: RemoteObject) -> RemoteDownload:
        """Starts streaming the file's bytes. The caller must consume or close it."""
        token = self.oauth.refresh()
        try:
            response = self.http.get(
                f"{FILES_URL}/{remote.file_id}",
                params={"alt": "media"},
                headers=self._auth(token),
                stream=True,
                timeout=(self.timeout, self.upload_timeout),
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            response.close()
            raise UploadFailed(f"Could not read {remote.name} back from Google Drive (HTTP {response.status_code}).", stage="delivery") from e
        except requests.exceptions.RequestException as e:
            raise UploadFailed(f"Network error while reading {remote.name} from Google Drive: {e}", stage="delivery") from e
        return RemoteDownload(response, remote.name)
