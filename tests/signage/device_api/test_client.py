import unittest
from unittest.mock import MagicMock

import requests

from signage.config import DeviceApiConfig
from signage.device_api.client import ApiResponse, DeviceApiClient, results_list


def _response(status_code=200, payload=None, text="", headers=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = status_code < 400
    resp.content = b"{}" if payload is not None else b""
    resp.json.return_value = payload
    resp.text = text
    resp.headers = headers or {}
    return resp


class TestDeviceApiClient(unittest.TestCase):
    def setUp(self):
        self.http = MagicMock()
        self.config = DeviceApiConfig(base_url="https://api.example.com/api/v2", api_key="secret")
        self.client = DeviceApiClient(self.config, http=self.http)

    def test_get_media_builds_url_and_auth(self):
        self.http.request.return_value = _response(200, {"id": 5001, "status": "ready"})

        resp = self.client.get_media(5001)

        self.assertTrue(resp.ok)
        self.assertEqual(resp.data["id"], 5001)
        args, kwargs = self.http.request.call_args
        self.assertEqual(args, ("GET", "https://api.example.com/api/v2/media/5001/"))
        self.assertEqual(kwargs["headers"]["Authorization"], "Token secret")
        self.assertEqual(kwargs["timeout"], 30.0)

    def test_network_error_is_transient(self):
        self.http.request.side_effect = requests.ConnectionError("connection reset")

        resp = self.client.get_screen(301)

        self.assertFalse(resp.ok)
        self.assertIsNone(resp.status_code)
        self.assertTrue(resp.transient)
        self.assertIn("ConnectionError", resp.error)

    def test_404_is_not_found_and_not_transient(self):
        self.http.request.return_value = _response(404, {"detail": "Not found."}, text="Not found.")

        resp = self.client.get_playlist(900)

        self.assertTrue(resp.not_found)
        self.assertFalse(resp.transient)
        self.assertIn("404", resp.error)

    def test_server_error_is_transient(self):
        self.http.request.return_value = _response(503, None, text="unavailable")

        resp = self.client.create_media("spot")

        self.assertFalse(resp.ok)
        self.assertTrue(resp.transient)

    def test_create_media_omits_origin_fields(self):
        self.http.request.return_value = _response(201, {"id": 1})

        self.client.create_media("spot")

        payload = self.http.request.call_args.kwargs["json"]
        self.assertEqual(payload["name"], "spot")
        self.assertNotIn("media_origin", payload)
        self.assertNotIn("media_type", payload)

    def test_root_relative_links_resolve_against_host(self):
        url = self.client.resolve_url("/api/v2/media/7/upload/")
        self.assertEqual(url, "https://api.example.com/api/v2/media/7/upload/")

    def test_absolute_urls_pass_through(self):
        url = self.client.resolve_url("https://uploads.example.com/put?sig=1")
        self.assertEqual(url, "https://uploads.example.com/put?sig=1")

    def test_put_binary_sends_no_api_auth(self):
        self.http.put.return_value = _response(200, None, headers={"ETag": '"abc"'})

        resp = self.client.put_binary("https://uploads.example.com/put", b"12345")

        self.assertTrue(resp.ok)
        self.assertEqual(resp.headers["ETag"], '"abc"')
        headers = self.http.put.call_args.kwargs["headers"]
        self.assertNotIn("Authorization", headers)
        self.assertEqual(headers["Content-Length"], "5")
        self.assertEqual(self.http.put.call_args.kwargs["timeout"], 300.0)

    def test_patch_screen_forces_payload(self):
        self.http.request.return_value = _response(200, {"id": 301})

        self.client.patch_screen(301, {"screen_content": {"source_type": "playlist", "source_id": 900}})

        args, kwargs = self.http.request.call_args
        self.assertEqual(args[0], "PATCH")
        self.assertEqual(kwargs["json"]["screen_content"]["source_id"], 900)


def test_results_list_accepts_both_shapes():
    assert results_list([{"id": 1}]) == [{"id": 1}]
    assert results_list({"count": 1, "results": [{"id": 2}]}) == [{"id": 2}]
    assert results_list({"detail": "nope"}) == []
    assert results_list(None) == []


def test_api_response_snippet_prefers_data():
    assert ApiResponse(ok=False, status_code=400, data={"a": 1}, error="bad").snippet() == "{'a': 1}"
    assert ApiResponse(ok=False, error="x" * 2000).snippet(10) == "x" * 10
