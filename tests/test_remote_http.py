"""
Tests for the remote AI service HTTP client.
"""
import asyncio
import json

import httpx
import pytest


def _client(handler, api_key="key-123"):
    from mediaflow.providers.remote import RemoteProcessingClient

    return RemoteProcessingClient(
        base_url="https://ai.test/",
        api_key=api_key,
        transport=httpx.MockTransport(handler),
    )


class TestNormalizeStatus:

    @pytest.mark.parametrize("raw,expected", [
        ("SUCCESS", "completed"),
        ("text_success", "completed"),
        ("done", "completed"),
        ("failed", "failed"),
        ("CREATE_TASK_FAILED", "failed"),
        ("queued", "processing"),
        (None, "processing"),
    ])
    def test_vendor_states(self, raw, expected):
        from mediaflow.providers.remote import normalize_status

        assert normalize_status(raw).value == expected


class TestExtractResult:

    def test_result_json_urls(self):
        from mediaflow.providers.remote.http import extract_result_ref

        data = {"resultJson": json.dumps({"resultUrls": ["https://cdn.test/a.mp4"]})}
        assert extract_result_ref(data) == "https://cdn.test/a.mp4"

    def test_output_list(self):
        from mediaflow.providers.remote.http import extract_result_ref

        assert extract_result_ref({"output": [{"audio_url": "https://cdn.test/s.mp3"}]}) == "https://cdn.test/s.mp3"

    def test_nothing_found(self):
        from mediaflow.providers.remote.http import extract_result_ref

        assert extract_result_ref({"resultJson": "not json"}) is None


class TestRemoteProcessingClient:

    def test_submit_posts_kind_and_input(self):
        from mediaflow.pipeline.models import StageKind

        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"data": {"taskId": "t-1"}})

        client = _client(handler)
        external_id = asyncio.run(client.submit(StageKind.SONG_GENERATION, {"prompt": "lofi"}))

        assert external_id == "t-1"
        assert seen["url"] == "https://ai.test/v1/jobs"
        assert seen["auth"] == "Bearer key-123"
        assert seen["body"] == {"kind": "song_generation", "input": {"prompt": "lofi"}}

    def test_submit_rejected(self):
        from mediaflow.pipeline.models import StageKind
        from mediaflow.providers.exceptions import ProviderError

        client = _client(lambda request: httpx.Response(422, text="bad input"))

        with pytest.raises(ProviderError) as exc_info:
            asyncio.run(client.submit(StageKind.SUBTITLES, {}))

        assert "422" in str(exc_info.value)
        assert exc_info.value.status_code == 422

    def test_submit_without_key(self):
        from mediaflow.pipeline.models import StageKind
        from mediaflow.providers.exceptions import ProviderUnavailable

        client = _client(lambda request: httpx.Response(200, json={"id": "x"}), api_key="")

        with pytest.raises(ProviderUnavailable):
            asyncio.run(client.submit(StageKind.SUBTITLES, {}))

    def test_auth_rejection(self):
        from mediaflow.providers.exceptions import ProviderUnavailable

        client = _client(lambda request: httpx.Response(401))

        with pytest.raises(ProviderUnavailable) as exc_info:
            asyncio.run(client.get_status("t-1"))

        assert exc_info.value.status_code == 401

    def test_status_completed_with_captions(self, sample_srt):
        from mediaflow.pipeline.models import RemoteJobStatus

        client = _client(lambda request: httpx.Response(200, json={"status": "succeeded", "srt": sample_srt}))

        report = asyncio.run(client.get_status("t-1"))

        assert report.status == RemoteJobStatus.COMPLETED
        assert report.result_text == sample_srt
        assert report.result_ref is None

    def test_status_failed_carries_message(self):
        from mediaflow.pipeline.models import RemoteJobStatus

        client = _client(lambda request: httpx.Response(200, json={"data": {"state": "fail", "failMsg": "nsfw"}}))
        # "fail" is not a known failure word, so it is still processing
        assert asyncio.run(client.get_status("t-1")).status == RemoteJobStatus.PROCESSING

        client = _client(lambda request: httpx.Response(200, json={"data": {"state": "failed", "failMsg": "nsfw"}}))
        report = asyncio.run(client.get_status("t-1"))
        assert report.status == RemoteJobStatus.FAILED
        assert report.error == "nsfw"

    def test_transport_error_is_provider_error(self):
        from mediaflow.providers.exceptions import ProviderError

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = _client(handler)

        with pytest.raises(ProviderError):
            asyncio.run(client.get_status("t-1"))
