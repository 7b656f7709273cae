"""Google Drive backend (Drive API v3).

Folders are resolved by name and parent and cached for the lifetime of
the store. JSON documents use upsert-by-name: update the existing file
in place when one with that name exists in the folder, else create it.

The OAuth handshake happens elsewhere; this store only needs either a
ready Drive service or ``google.oauth2`` credentials.
"""

import io
import json
import logging
from contextlib import contextmanager
from pathlib import Path

from google.auth.exceptions import GoogleAuthError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload, MediaIoBaseDownload, MediaIoBaseUpload

from savesync.config import DRIVE_ROOT_FOLDER_NAME
from savesync.errors import NetworkError, NotFoundError, StorageIOError
from savesync.models import RemoteBackupRecord, SaveSnapshot
from savesync.storage.backup_store import (
    ARTIFACTS_FOLDER,
    BACKUPS_FOLDER,
    CATALOG_NAME,
    LATEST_NAME,
    LIBRARY_FOLDER,
    METADATA_FOLDER,
    BackupStore,
    metadata_name,
)

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/drive.file"]
FOLDER_MIME = "application/vnd.google-apps.folder"
ZIP_MIME = "application/zip"
JSON_MIME = "application/json"
DOWNLOAD_CHUNK_SIZE = 4 * 1024 * 1024


def _quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


@contextmanager
def _remote_call(action: str):
    """Translate Drive/transport failures into ``NetworkError``."""
    try:
        yield
    except HttpError as exc:
        if exc.resp is not None and getattr(exc.resp, "status", None) == 404:
            raise NotFoundError(f"{action}: remote file not found") from exc
        raise NetworkError(f"{action} failed: {exc}") from exc
    except (GoogleAuthError, OSError) as exc:
        raise NetworkError(f"{action} failed: {exc}") from exc


class DriveBackupStore(BackupStore):

    def __init__(
        self,
        device_label: str,
        root_folder_name: str = DRIVE_ROOT_FOLDER_NAME,
        credentials: Credentials | None = None,
        service=None,
    ):
        super().__init__(device_label)
        self.root_folder_name = root_folder_name
        self.credentials = credentials
        self._service = service
        self._folder_cache: dict[tuple[str | None, str], str] = {}

    @classmethod
    def from_token_info(cls, info: dict, device_label: str,
                        root_folder_name: str = DRIVE_ROOT_FOLDER_NAME) -> "DriveBackupStore":
        """Build from an authorized-user token dict (as saved after OAuth)."""
        credentials = Credentials.from_authorized_user_info(info, SCOPES)
        return cls(device_label, root_folder_name, credentials=credentials)

    @property
    def name(self) -> str:
        return "Google Drive"

    def available(self) -> bool:
        if self._service is not None:
            return True
        if self.credentials is None:
            return False
        return bool(self.credentials.valid or self.credentials.refresh_token)

    def _drive(self):
        if self._service is None:
            if not self.available():
                raise NetworkError("Google Drive is not authenticated")
            self._service = build(
                "drive", "v3", credentials=self.credentials, cache_discovery=False,
            )
        return self._service

    # ------------------------------------------------------------------
    # Folder / file primitives
    # ------------------------------------------------------------------

    def _ensure_folder(self, name: str, parent_id: str | None = None) -> str:
        key = (parent_id, name)
        if key in self._folder_cache:
            return self._folder_cache[key]

        q = [f"name = {_quote(name)}", f"mimeType = '{FOLDER_MIME}'", "trashed = false"]
        if parent_id:
            q.append(f"{_quote(parent_id)} in parents")

        with _remote_call(f"Resolve folder {name}"):
            found = self._drive().files().list(
                q=" and ".join(q), fields="files(id, name)", spaces="drive",
            ).execute()
            files = found.get("files") or []
            if files:
                folder_id = files[0]["id"]
            else:
                body = {"name": name, "mimeType": FOLDER_MIME}
                if parent_id:
                    body["parents"] = [parent_id]
                folder_id = self._drive().files().create(body=body, fields="id").execute()["id"]

        self._folder_cache[key] = folder_id
        return folder_id

    def _app_folders(self) -> tuple[str, str]:
        root_id = self._ensure_folder(self.root_folder_name)
        return (
            self._ensure_folder(LIBRARY_FOLDER, root_id),
            self._ensure_folder(BACKUPS_FOLDER, root_id),
        )

    def _entity_folders(self, entity_id: str) -> tuple[str, str, str]:
        _, backups_id = self._app_folders()
        entity_folder = self._ensure_folder(entity_id, backups_id)
        return (
            entity_folder,
            self._ensure_folder(ARTIFACTS_FOLDER, entity_folder),
            self._ensure_folder(METADATA_FOLDER, entity_folder),
        )

    def _find_file(self, folder_id: str, name: str) -> dict | None:
        q = [f"name = {_quote(name)}", f"{_quote(folder_id)} in parents", "trashed = false"]
        with _remote_call(f"Find {name}"):
            found = self._drive().files().list(
                q=" and ".join(q), fields="files(id, name)", spaces="drive",
            ).execute()
        files = found.get("files") or []
        return files[0] if files else None

    def _upload_file(self, name: str, folder_id: str, file_path: str, mimetype: str) -> dict:
        try:
            media = MediaFileUpload(file_path, mimetype=mimetype)
        except OSError as exc:
            raise StorageIOError(f"Cannot read {file_path}: {exc}") from exc
        with _remote_call(f"Upload {name}"):
            return self._drive().files().create(
                body={"name": name, "parents": [folder_id]},
                media_body=media,
                fields="id, name",
            ).execute()

    def _upsert_json(self, name: str, folder_id: str, payload: dict) -> dict:
        data = json.dumps(payload, indent=2).encode("utf-8")
        media = MediaIoBaseUpload(io.BytesIO(data), mimetype=JSON_MIME)
        existing = self._find_file(folder_id, name)
        with _remote_call(f"Write {name}"):
            if existing:
                return self._drive().files().update(
                    fileId=existing["id"], media_body=media, fields="id, name",
                ).execute()
            return self._drive().files().create(
                body={"name": name, "parents": [folder_id]},
                media_body=media,
                fields="id, name",
            ).execute()

    def _read_json(self, file_id: str) -> dict | None:
        with _remote_call("Read document"):
            content = self._drive().files().get_media(fileId=file_id).execute()
        if isinstance(content, bytes):
            content = content.decode("utf-8")
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            logger.warning("Remote document %s is not valid JSON: %s", file_id, exc)
            return None
        return payload if isinstance(payload, dict) else None

    # ------------------------------------------------------------------
    # BackupStore contract
    # ------------------------------------------------------------------

    def upload_snapshot(self, entity_id: str, snapshot: SaveSnapshot) -> RemoteBackupRecord:
        entity_folder, artifacts_id, metadata_id = self._entity_folders(entity_id)

        archive = self._upload_file(snapshot.archive_name, artifacts_id,
                                    snapshot.archive_path, ZIP_MIME)
        metadata = self._base_metadata(entity_id, snapshot)
        metadata["artifact_ref"] = archive["id"]

        meta_file = self._upsert_json(metadata_name(snapshot.id), metadata_id, metadata)
        metadata["metadata_ref"] = meta_file["id"]

        self._upsert_json(LATEST_NAME, entity_folder, metadata)

        logger.info("Snapshot %s uploaded to Drive (file id %s)", snapshot.id, archive["id"])
        return RemoteBackupRecord.from_dict(metadata)

    def fetch_latest(self, entity_id: str) -> RemoteBackupRecord | None:
        entity_folder, _, _ = self._entity_folders(entity_id)
        latest = self._find_file(entity_folder, LATEST_NAME)
        if not latest:
            return None
        return RemoteBackupRecord.from_dict(self._read_json(latest["id"]))

    def download_archive(self, record: RemoteBackupRecord, target_path: str) -> str:
        if not record.artifact_ref:
            raise NotFoundError(f"Backup {record.id} has no Drive file id")
        target = Path(target_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fh = open(target, "wb")
        except OSError as exc:
            raise StorageIOError(f"Cannot write {target}: {exc}") from exc

        with fh, _remote_call(f"Download {record.archive_name}"):
            request = self._drive().files().get_media(fileId=record.artifact_ref)
            downloader = MediaIoBaseDownload(fh, request, chunksize=DOWNLOAD_CHUNK_SIZE)
            done = False
            while not done:
                _status, done = downloader.next_chunk()

        logger.info("Downloaded %s -> %s", record.archive_name, target)
        return str(target)

    def sync_catalog(self, document: dict):
        library_id, _ = self._app_folders()
        self._upsert_json(CATALOG_NAME, library_id, document)

    def load_catalog(self) -> dict | None:
        library_id, _ = self._app_folders()
        found = self._find_file(library_id, CATALOG_NAME)
        if not found:
            return None
        return self._read_json(found["id"])
