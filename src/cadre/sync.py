"""Downloads Google Photos albums into the photo directory.

Obtaining the OAuth access token is left to external tooling; this module
reads it from the configured token file. Each media item lands in
<photosDir>/<album title>/<item id>.<ext>, so running the sync again never
downloads an item twice.
"""

import json
import logging
import mimetypes
import os
import re
import threading
from typing import Callable, Dict, Iterator, List, Optional

import requests

from cadre.metadata import is_supported_image
from cadre.metrics import metric_sync_downloads_total

logger = logging.getLogger(__name__)

PHOTOS_LIBRARY_API_URL = "https://photoslibrary.googleapis.com/v1"
DEFAULT_DOWNLOAD_SIZE = "w1920-h1080"


class SyncError(Exception):
    pass


def load_access_token(token_file: str) -> str:
    try:
        with open(token_file, "r") as f:
            token = json.load(f)
    except FileNotFoundError as e:
        raise SyncError(
            f"No token found at {token_file}. Authorize the application first."
        ) from e
    except (OSError, json.JSONDecodeError) as e:
        raise SyncError(f"Could not read token file {token_file}: {e}") from e

    access_token = None
    if isinstance(token, dict):
        access_token = token.get("access_token") or token.get("token")
    if not access_token:
        raise SyncError(f"Token file {token_file} has no access token.")
    return access_token


class PhotosLibraryClient:
    def __init__(
        self,
        access_token: str,
        session: Optional[requests.Session] = None,
        timeout_s: float = 30,
    ):
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {access_token}"})
        self.timeout_s = timeout_s

    def _request(self, method: str, path: str, **kwargs) -> Dict:
        url = f"{PHOTOS_LIBRARY_API_URL}/{path}"
        try:
            r = self.session.request(method, url, timeout=self.timeout_s, **kwargs)
        except requests.exceptions.RequestException as e:
            raise SyncError(f"{method} {url} failed: {e}") from e
        if r.status_code != 200:
            raise SyncError(f"{method} {url} returned HTTP {r.status_code}: {r.text[:500]}")
        return r.json()

    def get_album(self, album_id: str) -> Dict:
        return self._request("GET", f"albums/{album_id}")

    def list_albums(self, page_size: int = 50) -> List[Dict]:
        albums = []
        params = {"pageSize": page_size}
        while True:
            data = self._request("GET", "albums", params=params)
            albums.extend(data.get("albums", []))
            next_page_token = data.get("nextPageToken")
            if not next_page_token:
                return albums
            params["pageToken"] = next_page_token

    def search_media_items(self, album_id: str, page_size: int = 100) -> Iterator[Dict]:
        body = {"albumId": album_id, "pageSize": page_size}
        while True:
            data = self._request("POST", "mediaItems:search", json=body)
            yield from data.get("mediaItems", [])
            next_page_token = data.get("nextPageToken")
            if not next_page_token:
                return
            body["pageToken"] = next_page_token

    def download(self, url: str, dest_path: str) -> None:
        try:
            with self.session.get(url, timeout=self.timeout_s, stream=True) as r:
                r.raise_for_status()
                with open(dest_path, "wb") as f:
                    for chunk in r.iter_content(chunk_size=64 * 1024):
                        f.write(chunk)
        except requests.exceptions.RequestException as e:
            raise SyncError(f"Download of {url} failed: {e}") from e


def media_item_filename(item: Dict) -> str:
    """<remote id><original extension>, stable across syncs."""
    extension = os.path.splitext(item.get("filename", ""))[1].lower()
    if not extension:
        extension = mimetypes.guess_extension(item.get("mimeType", "")) or ""
    return f"{item['id']}{extension}"


def sanitize_album_title(title: str) -> str:
    sanitized = re.sub(r"[\\/\x00]", "_", title).strip().lstrip(".")
    return sanitized or "album"


def deposit_media_item(
    client: PhotosLibraryClient,
    item: Dict,
    album_dir: str,
    download_size: str = DEFAULT_DOWNLOAD_SIZE,
) -> bool:
    """Downloads `item` into `album_dir` unless it is already there.

    Returns True when a file was written. The download goes to a hidden
    temporary file that is renamed into place once complete.
    """
    filename = media_item_filename(item)
    path = os.path.join(album_dir, filename)
    if os.path.exists(path):
        logger.debug(f"{path} already exists, skipping.")
        return False

    tmp_path = os.path.join(album_dir, f".{filename}.part")
    logger.info(f"Downloading: {item.get('filename', filename)}")
    try:
        client.download(f"{item['baseUrl']}={download_size}", tmp_path)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
    metric_sync_downloads_total.inc()
    return True


class PhotoLibrarySync:
    def __init__(self, sync_config: Dict, photos_dir: str, client: PhotosLibraryClient):
        self.config = sync_config
        self.photos_dir = photos_dir
        self.client = client
        self.download_size = sync_config.get("downloadSize", DEFAULT_DOWNLOAD_SIZE)

    def sync_album(self, album_id: str) -> int:
        """Returns the number of files written. Errors are logged, not raised."""
        written = 0
        try:
            album = self.client.get_album(album_id)
            album_title = album.get("title") or album_id
            logger.info(f"Syncing album: {album_title}")
            album_dir = os.path.join(self.photos_dir, sanitize_album_title(album_title))
            os.makedirs(album_dir, exist_ok=True)

            seen = 0
            for item in self.client.search_media_items(album_id):
                if not is_supported_image(media_item_filename(item)):
                    continue
                seen += 1
                if deposit_media_item(self.client, item, album_dir, self.download_size):
                    written += 1
            logger.info(
                f"Synced {seen} photos from {album_title} ({written} downloaded)."
            )
        except (SyncError, OSError, KeyError) as e:
            logger.error(f"Error syncing album {album_id}: {e}")
        return written

    def sync_all(self) -> int:
        logger.info("Starting Google Photos sync...")
        written = sum(self.sync_album(album_id) for album_id in self.config.get("albumIds", []))
        logger.info("Sync complete!")
        return written


class SyncThread(threading.Thread):
    """Runs a sync every syncInterval milliseconds until exit_event is set."""

    def __init__(
        self,
        sync_config: Dict,
        photos_dir: str,
        exit_event: threading.Event,
        on_files_written: Optional[Callable[[], object]] = None,
        client_factory: Optional[Callable[[str], PhotosLibraryClient]] = None,
    ):
        super().__init__(name="google_photos_sync", daemon=True)
        self.config = sync_config
        self.photos_dir = photos_dir
        self.exit_event = exit_event
        self.on_files_written = on_files_written
        self.client_factory = client_factory or PhotosLibraryClient
        self.interval_s = sync_config.get("syncInterval", 3600000) / 1000.0

    def run_once(self) -> int:
        # The token is re-read every time so that external tooling can refresh it.
        access_token = load_access_token(self.config.get("tokenFile"))
        sync = PhotoLibrarySync(self.config, self.photos_dir, self.client_factory(access_token))
        written = sync.sync_all()
        if written and self.on_files_written:
            self.on_files_written()
        return written

    def run(self):
        logger.info(f"Starting Google Photos sync thread, every {self.interval_s}s.")
        while not self.exit_event.is_set():
            try:
                self.run_once()
            except SyncError as e:
                logger.error(f"Google Photos sync failed: {e}")
            except Exception as e:
                logger.error(f"Unexpected error during Google Photos sync: {e}", exc_info=True)
            self.exit_event.wait(self.interval_s)
        logger.info("Google Photos sync thread stopped.")
