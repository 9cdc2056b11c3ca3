import pytest

from signage.config import ContentConfig
from signage.services.content_guarantee import (
    ACTION_APPENDED,
    ACTION_FAILED,
    ACTION_NO_CHANGE,
    ACTION_TAGGED,
    ContentGuaranteeSeeder,
)


@pytest.fixture
def api(fake_api):
    fake_api.add_playlist(900, "SIGNAGE | SCREEN | Cafe Central")
    return fake_api


class TestContentGuaranteeSeeder:
    @pytest.fixture(autouse=True)
    def _api(self, api):
        self.api = api

    def seeder(self, self_ad_media_id=None):
        return ContentGuaranteeSeeder(self.api, ContentConfig(self_ad_media_id=self_ad_media_id))

    def test_non_empty_playlist_untouched(self):
        self.api.playlists[900]["items"] = [{"id": 1, "type": "media"}]

        result = self.seeder(42).ensure_playlist_non_empty(900)

        assert result.ok
        assert result.action == ACTION_NO_CHANGE
        assert self.api.called("patch_playlist") == []

    def test_self_ad_preferred(self):
        result = self.seeder(42).ensure_playlist_non_empty(900)

        assert result.action == ACTION_APPENDED
        assert result.media_id == 42
        assert self.api.playlists[900]["items"] == [{"id": 42, "type": "media", "priority": 1, "duration": 15}]
        assert self.api.called("list_media") == []

    def test_newest_usable_video_chosen(self):
        self.api.add_media(1, status="processing", created_at="2024-06-01T00:00:00Z")
        self.api.add_media(2, status="ready", created_at="2024-01-01T00:00:00Z")
        self.api.add_media(3, status="ready", created_at="2024-03-01T00:00:00Z")
        self.api.add_media(4, status="ready")

        result = self.seeder().ensure_playlist_non_empty(900)

        assert result.action == ACTION_APPENDED
        assert result.media_id == 3

    def test_first_video_as_last_resort(self):
        self.api.add_media(8, status="processing")
        self.api.add_media(9, status="error")

        result = self.seeder().ensure_playlist_non_empty(900)

        assert result.ok
        assert result.media_id == 8

    def test_empty_library(self):
        result = self.seeder().ensure_playlist_non_empty(900)

        assert not result.ok
        assert result.error == "NO_MEDIA_AVAILABLE"

    def test_rejected_append_falls_back_to_tagging(self):
        self.api.add_media(42, tags=[{"name": "promo"}])
        self.api.fail("patch_playlist", status_code=400)

        result = self.seeder(42).ensure_playlist_non_empty(900)

        assert result.ok
        assert result.action == ACTION_TAGGED
        assert self.api.media[42]["tags"] == ["promo", "signage:ad"]

    def test_append_and_tag_both_fail(self):
        self.api.add_media(42)
        self.api.fail("patch_playlist", status_code=400)
        self.api.fail("patch_media", status_code=400)

        result = self.seeder(42).ensure_playlist_non_empty(900)

        assert not result.ok
        assert result.action == ACTION_FAILED
        assert result.error == "CONTENT_GUARANTEE_FAILED"
        assert result.media_id == 42

    def test_playlist_fetch_failure(self):
        result = self.seeder(42).ensure_playlist_non_empty(12345)

        assert not result.ok
        assert result.error.startswith("PLAYLIST_FETCH_FAILED")
