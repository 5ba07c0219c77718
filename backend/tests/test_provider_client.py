"""
Test Suite: Generation Provider Client
======================================

Payload defaults per operation, and submit/status against an
httpx.MockTransport standing in for the provider API.
"""

import json

import httpx
import pytest

from credit_ledger.errors import InvalidParameters, ProviderError, UnsupportedOperation
from credit_ledger.provider_client import GenerationProvider, build_payload, extract_result_urls


class TestBuildPayload:

    def test_song_defaults(self):
        payload = build_payload("song", {"prompt": "sunny day"}, callback_url="https://cb")
        assert payload["model"] == "V4"
        assert payload["style"] == "Pop"
        assert payload["title"] == "New Song"
        assert payload["customMode"] is True
        assert payload["instrumental"] is False
        assert payload["callBackUrl"] == "https://cb"

    def test_song_persona_only_when_allowed(self):
        params = {"prompt": "p", "personaId": "persona_1"}
        assert "personaId" not in build_payload("song", params)
        assert build_payload("song", params, allow_persona=True)["personaId"] == "persona_1"

    def test_weights_are_numeric(self):
        payload = build_payload("song", {"prompt": "p", "styleWeight": "0.65"})
        assert payload["styleWeight"] == 0.65
        with pytest.raises(InvalidParameters):
            build_payload("song", {"prompt": "p", "audioWeight": "loud"})

    def test_cover_requires_upload(self):
        with pytest.raises(InvalidParameters):
            build_payload("cover", {"prompt": "p"})

    def test_cover_instrumental_drops_prompt(self):
        payload = build_payload("cover", {"uploadUrl": "https://u", "prompt": "p", "instrumental": True})
        assert payload["model"] == "V5"
        assert payload["title"] == "Covered Song"
        assert "prompt" not in payload

    def test_extend_parses_continue_at(self):
        payload = build_payload("extend", {"uploadUrl": "https://u", "continueAt": "42"})
        assert payload["continueAt"] == 42
        assert payload["title"] == "Extended Song"
        with pytest.raises(InvalidParameters):
            build_payload("extend", {"uploadUrl": "https://u", "continueAt": "soon"})

    def test_persona_lists_missing_fields(self):
        with pytest.raises(InvalidParameters) as exc:
            build_payload("persona", {"taskId": "t"})
        assert exc.value.details["fields"] == ["audioId", "name", "description"]

    def test_lyrics_requires_prompt(self):
        with pytest.raises(InvalidParameters):
            build_payload("lyrics", {})

    def test_unknown_operation(self):
        with pytest.raises(UnsupportedOperation):
            build_payload("remix", {})


def _provider(handler, api_key="test-key"):
    return GenerationProvider(
        api_url="https://provider.test/api/v1",
        api_key=api_key,
        transport=httpx.MockTransport(handler)
    )


class TestSubmit:

    async def test_returns_task_id(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"code": 200, "data": {"taskId": "task_9"}})

        task_id = await _provider(handler).submit("lyrics", {"prompt": "rain"})

        assert task_id == "task_9"
        assert seen["url"] == "https://provider.test/api/v1/lyrics"
        assert seen["auth"] == "Bearer test-key"
        assert seen["body"]["prompt"] == "rain"

    async def test_http_error_status(self):
        provider = _provider(lambda request: httpx.Response(500, json={"msg": "overloaded"}))
        with pytest.raises(ProviderError, match="overloaded"):
            await provider.submit("song", {"prompt": "p"})

    async def test_reply_without_task_id(self):
        provider = _provider(lambda request: httpx.Response(200, json={"code": 200, "data": {}}))
        with pytest.raises(ProviderError):
            await provider.submit("song", {"prompt": "p"})

    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ProviderError):
            await _provider(handler).submit("song", {"prompt": "p"})

    async def test_not_configured(self):
        provider = _provider(lambda request: httpx.Response(200), api_key="")
        with pytest.raises(ProviderError, match="not configured"):
            await provider.submit("song", {"prompt": "p"})

    async def test_invalid_parameters_never_reach_provider(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"data": {"taskId": "t"}})

        with pytest.raises(InvalidParameters):
            await _provider(handler).submit("cover", {})
        assert calls == []


class TestQueryStatus:

    async def test_success_with_tracks(self):
        def handler(request):
            assert request.url.path.endswith("/generate/record-info")
            assert request.url.params["taskId"] == "task_1"
            return httpx.Response(200, json={"data": {
                "status": "SUCCESS",
                "response": {"sunoData": [{"audioUrl": "https://cdn/1.mp3"}, {"audioUrl": "https://cdn/2.mp3"}]}
            }})

        state = await _provider(handler).query_status("task_1")

        assert state["status"] == "success"
        assert state["result_urls"] == ["https://cdn/1.mp3", "https://cdn/2.mp3"]

    async def test_lyrics_status_path(self):
        def handler(request):
            assert request.url.path.endswith("/lyrics/record-info")
            return httpx.Response(200, json={"data": {"status": "PENDING"}})

        state = await _provider(handler).query_status("task_2", operation="lyrics")
        assert state["status"] == "pending"
        assert state["result_urls"] == []

    async def test_status_error(self):
        provider = _provider(lambda request: httpx.Response(404, json={}))
        with pytest.raises(ProviderError):
            await provider.query_status("task_3")


def test_extract_result_urls_skips_tracks_without_audio():
    data = {"data": {"response": {"data": [{"audioUrl": "a"}, {"title": "no audio"}, "junk"]}}}
    assert extract_result_urls(data) == ["a"]
