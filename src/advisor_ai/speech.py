from __future__ import annotations

import asyncio
import json
import re
from contextlib import suppress
from typing import Any

from mcp import ClientSession
from mcp.client.sse import sse_client

from advisor_ai.errors import SpeechSinkError
from advisor_ai.types import SpeechSink

SPOKEN_WORDS_PER_MINUTE = 165.0

_TTS_REPLACEMENTS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(\d)\s*(?:kts|kt)\b", re.IGNORECASE), r"\1 knots"),
    (re.compile(r"(\d)\s*fpm\b", re.IGNORECASE), r"\1 feet per minute"),
    (re.compile(r"(\d)\s*ft\b", re.IGNORECASE), r"\1 feet"),
    (re.compile(r"\bAGL\b"), "above ground level"),
    (re.compile(r"\bAOA\b", re.IGNORECASE), "angle of attack"),
    (re.compile(r"\bVMO\b"), "V M O"),
    (re.compile(r"\bVFE\b"), "V F E"),
)


class XPlaneMCPClient:
    def __init__(self, sse_url: str) -> None:
        self._sse_url = sse_url
        self._sse_cm: Any | None = None
        self._session_cm: Any | None = None
        self._session: ClientSession | None = None
        self._session_lock = asyncio.Lock()

    async def connect(self) -> None:
        self._sse_cm = sse_client(self._sse_url)
        read_stream, write_stream = await self._sse_cm.__aenter__()
        self._session_cm = ClientSession(read_stream, write_stream)
        self._session = await self._session_cm.__aenter__()
        await self._session.initialize()

    async def close(self) -> None:
        if self._session_cm is not None:
            with suppress(Exception):
                await self._session_cm.__aexit__(None, None, None)
        if self._sse_cm is not None:
            with suppress(Exception):
                await self._sse_cm.__aexit__(None, None, None)
        self._session = None
        self._session_cm = None
        self._sse_cm = None

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._session is None:
            raise RuntimeError("MCP session is not connected.")
        async with self._session_lock:
            result = await self._session.call_tool(name, arguments=arguments or {})
        return _decode_tool_result(result)

    async def speak(self, message: str) -> dict[str, Any]:
        return await self.call_tool("xplm_speak_string", {"message": message})


class McpSpeechSink(SpeechSink):
    """Speaks through X-Plane and holds until the utterance should have finished."""

    def __init__(
        self,
        *,
        mcp_client: XPlaneMCPClient,
        words_per_minute: float = SPOKEN_WORDS_PER_MINUTE,
    ) -> None:
        self._mcp = mcp_client
        self._words_per_minute = words_per_minute

    async def start(self) -> None:
        await self._mcp.connect()

    async def stop(self) -> None:
        await self._mcp.close()

    async def speak(self, text: str) -> None:
        message = normalize_tts_message(text)
        try:
            result = await self._mcp.speak(message)
        except Exception as exc:  # noqa: BLE001
            raise SpeechSinkError(f"xplm_speak_string failed: {exc}") from exc
        if not result.get("success", False):
            raise SpeechSinkError(f"xplm_speak_string rejected utterance: {result}")
        # X-Plane returns before the audio ends; the sink is busy until then.
        await asyncio.sleep(estimate_utterance_sec(message, self._words_per_minute))


class ConsoleSpeechSink(SpeechSink):
    async def start(self) -> None:
        return

    async def stop(self) -> None:
        return

    async def speak(self, text: str) -> None:
        print(f"[SPEAK] {normalize_tts_message(text)}")


def normalize_tts_message(text: str) -> str:
    value = re.sub(r"\s+", " ", str(text)).strip()
    for pattern, replacement in _TTS_REPLACEMENTS:
        value = pattern.sub(replacement, value)
    return value


def estimate_utterance_sec(text: str, words_per_minute: float = SPOKEN_WORDS_PER_MINUTE) -> float:
    words = len(text.split())
    if words == 0 or words_per_minute <= 0:
        return 0.0
    return words * 60.0 / words_per_minute


def _decode_tool_result(result: Any) -> dict[str, Any]:
    content = getattr(result, "content", None)
    if content is None and isinstance(result, dict):
        content = result.get("content")
    if not content:
        return {}

    for item in content:
        text = item.get("text") if isinstance(item, dict) else getattr(item, "text", None)
        if not isinstance(text, str) or not text:
            continue
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            return {"text": text}
        return value if isinstance(value, dict) else {"value": value}

    return {"content": [str(c) for c in content]}
