"""HTTP client for the signage device-management API."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urljoin

import requests
from loguru import logger

from signage.config import DeviceApiConfig
from signage.errors import is_transient_status


@dataclass
class ApiResponse:
    """Outcome of one device API call. Network failures have no status code."""

    ok: bool
    status_code: Optional[int] = None
    data: Any = None
    error: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def not_found(self) -> bool:
        return self.status_code == 404

    @property
    def transient(self) -> bool:
        return not self.ok and is_transient_status(self.status_code)

    def snippet(self, limit: int = 1000) -> str:
        if self.data is not None:
            return str(self.data)[:limit]
        return (self.error or "")[:limit]


class DeviceApiClient:
    """
    Thin wrapper over the device API.
    Every call carries a bounded timeout and returns an ApiResponse instead of raising,
    so multi-step protocols can branch on 404 vs transient failures.
    """

    def __init__(self, config: DeviceApiConfig, http: Optional[requests.Session] = None):
        self.config = config
        self.http = http or requests.Session()

    def resolve_url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        base = self.config.base_url.rstrip("/") + "/"
        if path.startswith("/api/"):
            # Root-relative links handed back by the API itself
            return urljoin(base, path)
        return urljoin(base, path.lstrip("/"))

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Token {self.config.api_key}"
        return headers

    def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> ApiResponse:
        url = self.resolve_url(path)
        try:
            resp = self.http.request(
                method,
                url,
                json=json,
                params=params,
                headers=self._headers(),
                timeout=self.config.request_timeout_seconds,
            )
        except requests.RequestException as e:
            logger.warning(f"[DEVICE_API] {method} {path} failed: {e}")
            return ApiResponse(ok=False, status_code=None, error=f"{type(e).__name__}: {e}")

        data = None
        if resp.content:
            try:
                data = resp.json()
            except ValueError:
                data = None

        if not resp.ok:
            text = resp.text[:300] if resp.text else ""
            logger.debug(f"[DEVICE_API] {method} {path} -> {resp.status_code}")
            return ApiResponse(
                ok=False,
                status_code=resp.status_code,
                data=data,
                error=f"Device API {resp.status_code}: {text}",
                headers=dict(resp.headers),
            )
        return ApiResponse(ok=True, status_code=resp.status_code, data=data, headers=dict(resp.headers))

    # Media

    def create_media(self, name: str) -> ApiResponse:
        # Presigned uploads reject origin/type fields; the platform infers them.
        return self.request("POST", "/media/", json={
            "name": name,
            "description": "",
            "arguments": {"buffering": True, "resolution": "highest"},
        })

    def get_media(self, media_id: int) -> ApiResponse:
        return self.request("GET", f"/media/{media_id}/")

    def patch_media(self, media_id: int, payload: Dict[str, Any]) -> ApiResponse:
        return self.request("PATCH", f"/media/{media_id}/", json=payload)

    def list_media(self, media_type: str = "video", page_size: int = 50) -> ApiResponse:
        return self.request("GET", "/media/", params={"media_type": media_type, "page_size": page_size})

    def get_upload_url(self, endpoint: str) -> ApiResponse:
        return self.request("GET", endpoint)

    def put_binary(self, url: str, data: bytes, content_type: str = "video/mp4") -> ApiResponse:
        """PUT raw bytes to a presigned destination. No API auth header is sent."""
        try:
            resp = self.http.put(
                url,
                data=data,
                headers={"Content-Type": content_type, "Content-Length": str(len(data))},
                timeout=self.config.upload_timeout_seconds,
            )
        except requests.RequestException as e:
            logger.warning(f"[DEVICE_API] binary PUT failed: {e}")
            return ApiResponse(ok=False, status_code=None, error=f"{type(e).__name__}: {e}")

        if not resp.ok:
            return ApiResponse(
                ok=False,
                status_code=resp.status_code,
                error=f"Upload PUT {resp.status_code}: {(resp.text or '')[:300]}",
                headers=dict(resp.headers),
            )
        return ApiResponse(ok=True, status_code=resp.status_code, headers=dict(resp.headers))

    def complete_upload(self, media_id: int, upload_url: str) -> ApiResponse:
        return self.request("PUT", f"/media/{media_id}/upload/complete/", json={"upload_url": upload_url})

    # Screens

    def get_screen(self, player_id: int) -> ApiResponse:
        return self.request("GET", f"/screens/{player_id}/")

    def patch_screen(self, player_id: int, payload: Dict[str, Any]) -> ApiResponse:
        return self.request("PATCH", f"/screens/{player_id}/", json=payload)

    def push_screen(self, player_id: int) -> ApiResponse:
        return self.request("POST", f"/screens/{player_id}/push/")

    # Playlists

    def get_playlist(self, playlist_id: int) -> ApiResponse:
        return self.request("GET", f"/playlists/{playlist_id}/")

    def search_playlists(self, name: str) -> ApiResponse:
        return self.request("GET", "/playlists/", params={"search": name})

    def create_playlist(self, name: str, items: Optional[List[Dict[str, Any]]] = None) -> ApiResponse:
        return self.request("POST", "/playlists/", json={"name": name, "items": items or []})

    def patch_playlist(self, playlist_id: int, payload: Dict[str, Any]) -> ApiResponse:
        return self.request("PATCH", f"/playlists/{playlist_id}/", json=payload)

    # Layouts (legacy devices only)

    def get_layout(self, layout_id: int) -> ApiResponse:
        return self.request("GET", f"/layouts/{layout_id}/")

    def patch_layout(self, layout_id: int, payload: Dict[str, Any]) -> ApiResponse:
        return self.request("PATCH", f"/layouts/{layout_id}/", json=payload)


def results_list(data: Any) -> List[Dict[str, Any]]:
    """List endpoints answer either a bare list or a paginated {"results": [...]} object."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("results"), list):
        return data["results"]
    return []
