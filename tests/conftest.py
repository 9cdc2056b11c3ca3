import copy
import struct

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from signage.db.base import Base
from signage.db.models import AdAsset, Location, Placement, ReadinessStatus, Screen
from signage.device_api.client import ApiResponse


def _box(kind: bytes, payload: bytes) -> bytes:
    return struct.pack(">I", 8 + len(payload)) + kind + payload


def build_mp4(size: int = 200 * 1024, faststart: bool = True) -> bytes:
    """Synthetic MP4 of exactly `size` bytes: ftyp, moov and a padded mdat."""
    ftyp = _box(b"ftyp", b"isom" + b"\x00\x00\x02\x00" + b"isomiso2avc1mp41")
    moov = _box(b"moov", b"\x00" * 32)
    padding = max(0, size - len(ftyp) - len(moov) - 8)
    mdat = _box(b"mdat", b"\x00" * padding)
    return ftyp + moov + mdat if faststart else ftyp + mdat + moov


class FakeDeviceApi:
    """In-memory stand-in for DeviceApiClient. Every call is recorded in `calls`."""

    def __init__(self):
        self.media = {}
        self.screens = {}
        self.playlists = {}
        self.layouts = {}
        self.calls = []
        self.failures = {}
        self.next_media_id = 5001
        self.next_playlist_id = 900
        self.uploaded = {}
        self.ignore_screen_patches = False
        self.ignore_playlist_patches = False
        self.ignore_layout_patches = False
        self._scripts = {}
        self._scripted = set()

    # Test helpers

    def fail(self, method, status_code=500, times=1, error=None):
        queue = self.failures.setdefault(method, [])
        for _ in range(times):
            queue.append(ApiResponse(ok=False, status_code=status_code, error=error or f"HTTP {status_code}"))

    def script_media(self, media_id, *states):
        """Each get_media call applies the next state; the last one applied sticks."""
        self._scripts[media_id] = list(states)
        self._scripted.add(media_id)

    def add_media(self, media_id, **fields):
        media = {"id": media_id, "name": f"media-{media_id}", "status": "ready", "filesize": 1024, "arguments": {}, "tags": []}
        media.update(fields)
        self.media[media_id] = media
        return media

    def add_screen(self, player_id, source_type="playlist", source_id=None):
        self.screens[player_id] = {
            "id": player_id,
            "name": f"player-{player_id}",
            "screen_content": {"source_type": source_type, "source_id": source_id},
        }
        return self.screens[player_id]

    def add_playlist(self, playlist_id, name, items=None):
        self.playlists[playlist_id] = {"id": playlist_id, "name": name, "items": list(items or [])}
        return self.playlists[playlist_id]

    def called(self, method):
        return [args for name, args in self.calls if name == method]

    def _enter(self, method, *args):
        self.calls.append((method, args))
        queue = self.failures.get(method)
        if queue:
            return queue.pop(0)
        return None

    @staticmethod
    def _ok(data=None, status_code=200, headers=None):
        return ApiResponse(ok=True, status_code=status_code, data=copy.deepcopy(data), headers=headers or {})

    @staticmethod
    def _missing(what):
        return ApiResponse(ok=False, status_code=404, data={"detail": "Not found."}, error=f"Device API 404: {what}")

    # Media

    def create_media(self, name):
        failed = self._enter("create_media", name)
        if failed:
            return failed
        media_id = self.next_media_id
        self.next_media_id += 1
        self.media[media_id] = {
            "id": media_id, "name": name, "status": "initialized", "filesize": 0, "arguments": {}, "tags": [],
        }
        return self._ok({"id": media_id, "name": name, "get_upload_url": f"/media/{media_id}/upload/"}, 201)

    def get_media(self, media_id):
        failed = self._enter("get_media", media_id)
        if failed:
            return failed
        if media_id not in self.media:
            return self._missing(f"media {media_id}")
        script = self._scripts.get(media_id)
        if script:
            self.media[media_id].update(script.pop(0))
        return self._ok(self.media[media_id])

    def patch_media(self, media_id, payload):
        failed = self._enter("patch_media", media_id, payload)
        if failed:
            return failed
        if media_id not in self.media:
            return self._missing(f"media {media_id}")
        self.media[media_id].update(copy.deepcopy(payload))
        return self._ok(self.media[media_id])

    def list_media(self, media_type="video", page_size=50):
        failed = self._enter("list_media", media_type, page_size)
        if failed:
            return failed
        return self._ok({"count": len(self.media), "results": list(self.media.values())[:page_size]})

    def get_upload_url(self, endpoint):
        failed = self._enter("get_upload_url", endpoint)
        if failed:
            return failed
        media_id = endpoint.strip("/").split("/")[1]
        return self._ok({"upload_url": f"https://uploads.example.com/{media_id}?sig=abc"})

    def put_binary(self, url, data, content_type="video/mp4"):
        failed = self._enter("put_binary", url, len(data))
        if failed:
            return failed
        self.uploaded[url] = len(data)
        return self._ok(None, headers={"ETag": '"etag-1"'})

    def complete_upload(self, media_id, upload_url):
        failed = self._enter("complete_upload", media_id, upload_url)
        if failed:
            return failed
        if media_id not in self._scripted and media_id in self.media:
            self.media[media_id].update({"status": "ready", "filesize": self.uploaded.get(upload_url, 1)})
        return self._ok({})

    # Screens

    def get_screen(self, player_id):
        failed = self._enter("get_screen", player_id)
        if failed:
            return failed
        if player_id not in self.screens:
            return self._missing(f"screen {player_id}")
        return self._ok(self.screens[player_id])

    def patch_screen(self, player_id, payload):
        failed = self._enter("patch_screen", player_id, payload)
        if failed:
            return failed
        if player_id not in self.screens:
            return self._missing(f"screen {player_id}")
        if not self.ignore_screen_patches:
            self.screens[player_id]["screen_content"] = dict(payload["screen_content"])
        return self._ok(self.screens[player_id])

    def push_screen(self, player_id):
        failed = self._enter("push_screen", player_id)
        if failed:
            return failed
        return self._ok({})

    # Playlists

    def get_playlist(self, playlist_id):
        failed = self._enter("get_playlist", playlist_id)
        if failed:
            return failed
        if playlist_id not in self.playlists:
            return self._missing(f"playlist {playlist_id}")
        return self._ok(self.playlists[playlist_id])

    def search_playlists(self, name):
        failed = self._enter("search_playlists", name)
        if failed:
            return failed
        matches = [p for p in self.playlists.values() if name.lower() in p["name"].lower()]
        return self._ok({"count": len(matches), "results": matches})

    def create_playlist(self, name, items=None):
        failed = self._enter("create_playlist", name)
        if failed:
            return failed
        playlist_id = self.next_playlist_id
        self.next_playlist_id += 1
        playlist = self.add_playlist(playlist_id, name, items)
        return self._ok(playlist, 201)

    def patch_playlist(self, playlist_id, payload):
        failed = self._enter("patch_playlist", playlist_id, payload)
        if failed:
            return failed
        if playlist_id not in self.playlists:
            return self._missing(f"playlist {playlist_id}")
        if not self.ignore_playlist_patches:
            self.playlists[playlist_id].update(copy.deepcopy(payload))
        return self._ok(self.playlists[playlist_id])

    # Layouts

    def get_layout(self, layout_id):
        failed = self._enter("get_layout", layout_id)
        if failed:
            return failed
        if layout_id not in self.layouts:
            return self._missing(f"layout {layout_id}")
        return self._ok(self.layouts[layout_id])

    def patch_layout(self, layout_id, payload):
        failed = self._enter("patch_layout", layout_id, payload)
        if failed:
            return failed
        if layout_id not in self.layouts:
            return self._missing(f"layout {layout_id}")
        if not self.ignore_layout_patches:
            self.layouts[layout_id].update(copy.deepcopy(payload))
        return self._ok(self.layouts[layout_id])


class ModelFactory:
    """Creates and commits rows for tests."""

    def __init__(self, session):
        self.session = session

    def _save(self, obj):
        self.session.add(obj)
        self.session.commit()
        return obj

    def location(self, name="Cafe Central", playlist_id=None, playlist_name=None):
        return self._save(Location(name=name, playlist_id=playlist_id, playlist_name=playlist_name))

    def screen(self, location=None, player_id=301, name="Front window"):
        return self._save(Screen(
            name=name,
            player_id=player_id,
            location_id=location.id if location else None,
            status="online",
        ))

    def placement(self, screen, advertiser_id=7, is_active=True):
        return self._save(Placement(screen_id=screen.id, advertiser_id=advertiser_id, is_active=is_active))

    def asset(
        self,
        advertiser_id=7,
        storage_path="ads/adv7/spot.mp4",
        readiness_status=ReadinessStatus.READY_FOR_YODECK,
        external_media_id=5001,
        **fields,
    ):
        return self._save(AdAsset(
            advertiser_id=advertiser_id,
            original_name=fields.pop("original_name", "spot.mp4"),
            storage_path=storage_path,
            readiness_status=readiness_status,
            external_media_id=external_media_id,
            **fields,
        ))


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'pipeline.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make(session):
    return ModelFactory(session)


@pytest.fixture
def fake_api():
    return FakeDeviceApi()


@pytest.fixture
def make_mp4():
    return build_mp4


@pytest.fixture
def storage(tmp_path):
    from signage.media.storage import LocalObjectStorage

    return LocalObjectStorage(tmp_path / "storage")


@pytest.fixture
def sleeps():
    """Collects requested sleep durations instead of sleeping."""
    return []
