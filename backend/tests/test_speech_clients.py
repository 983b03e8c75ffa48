from __future__ import annotations

import asyncio
import base64
import json

import httpx

from taskcall.services import twiml
from taskcall.services.stt import SpeechToTextClient
from taskcall.services.tts import PromptAudioCache


def test_tts_synthesizes_once_and_serves_from_disk(tmp_path) -> None:
    requests: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return httpx.Response(200, json={"audioContent": base64.b64encode(b"ID3-mp3").decode("ascii")})

    cache = PromptAudioCache(tmp_path / "audio", api_key="k", transport=httpx.MockTransport(handler))

    async def _test() -> None:
        assert await cache.ensure("intro", "નમસ્તે")
        assert await cache.ensure("intro", "નમસ્તે")

    asyncio.run(_test())

    assert len(requests) == 1
    assert requests[0]["voice"]["languageCode"] == "gu-IN"
    assert (tmp_path / "audio" / "intro.mp3").read_bytes() == b"ID3-mp3"
    assert cache.audio_path("intro", "નમસ્તે") == "/audio/intro.mp3"


def test_tts_miss_schedules_background_synthesis(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"audioContent": base64.b64encode(b"mp3").decode("ascii")})

    cache = PromptAudioCache(tmp_path / "audio", api_key="k", transport=httpx.MockTransport(handler))

    async def _test() -> None:
        assert cache.audio_path("task_check", "પ્રશ્ન") is None
        for _ in range(20):
            await asyncio.sleep(0.01)
            if cache.audio_path("task_check", "પ્રશ્ન"):
                break
        assert cache.audio_path("task_check", "પ્રશ્ન") == "/audio/task_check.mp3"

    asyncio.run(_test())


def test_tts_failure_is_retried_on_next_access(tmp_path) -> None:
    responses = [httpx.Response(503), httpx.Response(200, json={"audioContent": base64.b64encode(b"ok").decode()})]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    cache = PromptAudioCache(tmp_path / "audio", api_key="k", transport=httpx.MockTransport(handler))

    async def _test() -> None:
        assert not await cache.ensure("escalate", "માફ કરશો")
        assert await cache.ensure("escalate", "માફ કરશો")

    asyncio.run(_test())


def test_tts_without_key_never_calls_out(tmp_path) -> None:
    cache = PromptAudioCache(tmp_path / "audio", api_key="")
    assert not cache.enabled
    assert cache.audio_path("intro", "નમસ્તે") is None
    assert asyncio.run(cache.preload([("intro", "નમસ્તે")])) == 0


def test_stt_parses_transcript_and_language() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers.get("authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "results": {
                    "channels": [
                        {"detected_language": "gu", "alternatives": [{"transcript": " કામ બાકી છે "}]}
                    ]
                }
            },
        )

    client = SpeechToTextClient(api_key="dg", transport=httpx.MockTransport(handler))
    transcript = asyncio.run(client.transcribe("https://rec.test/RE1.wav", call_sid="CA1"))

    assert transcript.text == "કામ બાકી છે"
    assert transcript.language == "gu"
    assert captured["auth"] == "Token dg"
    assert captured["body"] == {"url": "https://rec.test/RE1.wav"}


def test_stt_failure_yields_empty_transcript() -> None:
    client = SpeechToTextClient(api_key="dg", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    transcript = asyncio.run(client.transcribe("https://rec.test/RE1.wav"))

    assert transcript.text == ""
    assert transcript.language == "gu-IN"


def test_twiml_escapes_text_and_hangs_up() -> None:
    body = twiml.play_and_hangup("https://calls.test/", None, "A & B <ok>")

    assert "<Say language=\"gu-IN\">A &amp; B &lt;ok&gt;</Say>" in body
    assert body.endswith("<Hangup/></Response>")
    assert twiml.hangup().endswith("<Response><Hangup/></Response>")
