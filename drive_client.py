"""
Google Drive v3 client implementing the remote mirror contract.

upload / delete / exists / list are what the sync coordinator needs;
download and export_text feed the content extractor for files that only
live in the mirror. Credentials are a caller-supplied bearer token;
refreshing it is the caller's job.
"""
import json
import logging
import os
import uuid
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

GOOGLE_APPS_EXPORT_TYPES = {
    "application/vnd.google-apps.document": "text/plain",
    "application/vnd.google-apps.spreadsheet": "text/csv",
    "application/vnd.google-apps.presentation": "text/plain",
}

RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


class MirrorAPIError(Exception):
    """Error returned by the mirror API."""
    def __init__(self, status_code: int, message: str, response: Optional[Dict] = None):
        self.status_code = status_code
        self.message = message
        self.response = response
        super().__init__(f"Mirror API Error {status_code}: {message}")

    @property
    def is_rate_limited(self) -> bool:
        if self.status_code == 429:
            return True
        if self.status_code != 403 or not self.response:
            return False
        errors = (self.response.get("error") or {}).get("errors") or []
        return any(e.get("reason") in RATE_LIMIT_REASONS for e in errors)


class DriveMirrorClient:
    """
    Drive v3 REST client.

    Supports:
    - Multipart upload into a folder
    - Delete, existence check and folder listing
    - Raw download and Google Docs/Sheets/Slides text export
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: str = "https://www.googleapis.com",
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the Drive client.

        Args:
            access_token: OAuth bearer token (falls back to DRIVE_ACCESS_TOKEN)
            base_url: API root
            timeout: Request timeout in seconds (DRIVE_API_TIMEOUT_SECONDS, default 30)
            transport: Optional httpx transport (used by tests)
        """
        access_token = access_token or os.getenv("DRIVE_ACCESS_TOKEN")
        if not access_token:
            raise ValueError("Drive access token is required")

        if timeout is None:
            timeout = float(os.getenv("DRIVE_API_TIMEOUT_SECONDS", "30"))

        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client"""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _handle_response(self, resp: httpx.Response) -> Dict[str, Any]:
        """
        Raise MirrorAPIError for any non-2xx response.

        Returns the decoded JSON body, or {} for empty responses.
        """
        if resp.status_code == 429:
            raise MirrorAPIError(429, "Rate limit exceeded. Wait before retrying.")

        if resp.is_error:
            try:
                error_data = resp.json()
            except ValueError:
                error_data = {"error": {"message": resp.text}}
            message = (error_data.get("error") or {}).get("message") or resp.reason_phrase
            raise MirrorAPIError(resp.status_code, message, error_data)

        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    # ========================================================================
    # Mirror contract
    # ========================================================================

    def upload(self, name: str, data: bytes, mime_type: str, folder_ref: str) -> str:
        """
        Upload bytes into a folder.

        Returns:
            The new file's remote id
        """
        boundary = f"loanfile-{uuid.uuid4().hex}"
        metadata = {"name": name, "parents": [folder_ref]}
        body = b"".join([
            f"--{boundary}\r\n".encode(),
            b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
            json.dumps(metadata).encode(),
            f"\r\n--{boundary}\r\n".encode(),
            f"Content-Type: {mime_type}\r\n\r\n".encode(),
            data,
            f"\r\n--{boundary}--".encode(),
        ])
        resp = self._client.post(
            "/upload/drive/v3/files",
            params={"uploadType": "multipart", "fields": "id,name,mimeType,size"},
            content=body,
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
        )
        result = self._handle_response(resp)
        logger.info(f"Uploaded {name} to mirror folder {folder_ref} as {result.get('id')}")
        return result["id"]

    def delete(self, remote_id: str) -> None:
        """Delete a remote file. A file that is already gone counts as deleted."""
        resp = self._client.delete(f"/drive/v3/files/{remote_id}")
        if resp.status_code == 404:
            logger.info(f"Remote file {remote_id} already absent")
            return
        self._handle_response(resp)

    def exists(self, remote_id: str) -> bool:
        """True when the file is present and not in the trash."""
        resp = self._client.get(f"/drive/v3/files/{remote_id}", params={"fields": "id,trashed"})
        if resp.status_code == 404:
            return False
        data = self._handle_response(resp)
        return not data.get("trashed", False)

    def list(self, folder_ref: str) -> List[Dict[str, Any]]:
        """
        List files directly inside a folder.

        Returns:
            [{"id", "name", "mimeType", "size"}], size as int (0 for Google-native files)
        """
        files: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            params = {
                "q": f"'{folder_ref}' in parents and trashed = false",
                "fields": "nextPageToken, files(id, name, mimeType, size)",
                "pageSize": 100,
            }
            if page_token:
                params["pageToken"] = page_token
            data = self._handle_response(self._client.get("/drive/v3/files", params=params))
            for item in data.get("files", []):
                files.append({
                    "id": item["id"],
                    "name": item.get("name", ""),
                    "mimeType": item.get("mimeType", "application/octet-stream"),
                    "size": int(item.get("size") or 0),
                })
            page_token = data.get("nextPageToken")
            if not page_token:
                return files

    # ========================================================================
    # Content access
    # ========================================================================

    def download(self, remote_id: str) -> bytes:
        resp = self._client.get(f"/drive/v3/files/{remote_id}", params={"alt": "media"})
        if resp.is_error:
            self._handle_response(resp)
        return resp.content

    def export_text(self, remote_id: str, mime_type: str) -> str:
        """Export a Google Docs/Sheets/Slides file to plain text (CSV for sheets)."""
        export_type = GOOGLE_APPS_EXPORT_TYPES.get(mime_type, "text/plain")
        resp = self._client.get(
            f"/drive/v3/files/{remote_id}/export",
            params={"mimeType": export_type},
        )
        if resp.is_error:
            self._handle_response(resp)
        return resp.text
