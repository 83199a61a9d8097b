from __future__ import annotations

import sys
import unittest
from pathlib import Path
from types import SimpleNamespace
from typing import Any

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from advisor_ai.errors import SpeechSinkError
from advisor_ai.speech import (
    McpSpeechSink,
    _decode_tool_result,
    estimate_utterance_sec,
    normalize_tts_message,
)


class _FakeMcp:
    def __init__(self, result: dict[str, Any] | None = None, error: Exception | None = None) -> None:
        self._result = result if result is not None else {"success": True}
        self._error = error
        self.messages: list[str] = []
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def speak(self, message: str) -> dict[str, Any]:
        self.messages.append(message)
        if self._error is not None:
            raise self._error
        return self._result


class TestTtsNormalization(unittest.TestCase):
    def test_units_converted_for_tts(self) -> None:
        text = "Approach 140 kt, sink 800 fpm at 300 ft AGL."
        out = normalize_tts_message(text)
        self.assertIn("140 knots", out)
        self.assertIn("800 feet per minute", out)
        self.assertIn("300 feet above ground level", out)

    def test_abbreviations_spelled_out(self) -> None:
        out = normalize_tts_message("High AOA, reduce pitch.  Speed above VMO.")
        self.assertEqual(out, "High angle of attack, reduce pitch. Speed above V M O.")

    def test_estimate_utterance(self) -> None:
        self.assertEqual(estimate_utterance_sec(""), 0.0)
        self.assertAlmostEqual(estimate_utterance_sec("one two three", words_per_minute=60.0), 3.0)


class TestMcpSpeechSink(unittest.IsolatedAsyncioTestCase):
    async def test_speaks_normalized_text(self) -> None:
        mcp = _FakeMcp()
        sink = McpSpeechSink(mcp_client=mcp, words_per_minute=600_000.0)  # type: ignore[arg-type]
        await sink.start()
        await sink.speak("Gear down, 120 kts.")
        await sink.stop()

        self.assertEqual(mcp.messages, ["Gear down, 120 knots."])
        self.assertFalse(mcp.connected)

    async def test_rejected_utterance_raises(self) -> None:
        sink = McpSpeechSink(mcp_client=_FakeMcp(result={"success": False}))  # type: ignore[arg-type]
        with self.assertRaises(SpeechSinkError):
            await sink.speak("Gear down.")

    async def test_transport_error_raises(self) -> None:
        sink = McpSpeechSink(mcp_client=_FakeMcp(error=ConnectionError("sse closed")))  # type: ignore[arg-type]
        with self.assertRaises(SpeechSinkError) as ctx:
            await sink.speak("Gear down.")
        self.assertIn("sse closed", str(ctx.exception))


def test_decode_tool_result_json_text() -> None:
    result = SimpleNamespace(content=[SimpleNamespace(text='{"success": true}')])
    assert _decode_tool_result(result) == {"success": True}


def test_decode_tool_result_plain_text() -> None:
    result = {"content": [{"text": "spoken"}]}
    assert _decode_tool_result(result) == {"text": "spoken"}


def test_decode_tool_result_empty() -> None:
    assert _decode_tool_result(SimpleNamespace(content=[])) == {}
