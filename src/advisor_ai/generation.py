from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Any

from autogen_core.models import ChatCompletionClient, SystemMessage, UserMessage
from copilot import CopilotClient

from advisor_ai.errors import GenerationError, GenerationTimeout
from advisor_ai.types import GenerationBackend, Prompt

_AUTH_ERROR_MARKERS: tuple[str, ...] = (
    "authorization error",
    "/login",
    "not authenticated",
    "secitemcopymatching failed",
)


class CopilotGenerationBackend(GenerationBackend):
    """One Copilot SDK session per advisory request."""

    def __init__(
        self,
        *,
        model: str,
        github_token: str,
        use_logged_in_user: bool,
        use_custom_provider: bool = False,
        provider_base_url: str = "",
        provider_bearer_token: str = "",
        request_timeout_sec: float = 20.0,
    ) -> None:
        self._client = CopilotClient(build_copilot_client_options(github_token, use_logged_in_user))
        self._use_logged_in_user = use_logged_in_user
        self._model = _normalize_model_name(model)
        self._use_custom_provider = use_custom_provider
        self._provider_base_url = provider_base_url
        self._provider_bearer_token = provider_bearer_token
        self._request_timeout_sec = request_timeout_sec
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        try:
            await self._client.start()
        except Exception as exc:  # noqa: BLE001
            if is_copilot_auth_error(exc):
                raise RuntimeError(copilot_auth_error_message(self._use_logged_in_user)) from exc
            raise
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        with suppress(Exception):
            await self._client.stop()
        self._started = False

    async def generate(self, prompt: Prompt) -> str:
        if not self._started:
            raise GenerationError("Copilot backend is not started.", transient=False)

        session_config: dict[str, Any] = {
            "model": self._model,
            "streaming": False,
            "system_message": {"mode": "append", "content": prompt.system},
        }
        if self._use_custom_provider:
            session_config["provider"] = {
                "type": "openai",
                "base_url": self._provider_base_url,
                "bearer_token": self._provider_bearer_token,
            }

        try:
            session = await self._client.create_session(session_config)
        except Exception as exc:  # noqa: BLE001
            raise _classify(exc) from exc

        try:
            event = await session.send_and_wait(
                {"prompt": prompt.user_text()},
                timeout=self._request_timeout_sec,
            )
            text = _event_content(event)
            if not text:
                text = await _last_assistant_message(session)
        except (asyncio.TimeoutError, TimeoutError) as exc:
            raise GenerationTimeout(self._request_timeout_sec) from exc
        except Exception as exc:  # noqa: BLE001
            raise _classify(exc) from exc
        finally:
            with suppress(Exception):
                await session.destroy()

        if not text:
            raise GenerationError("Copilot returned an empty advisory.", transient=True)
        return text


class ChatClientGenerationBackend(GenerationBackend):
    """Adapter for any AutoGen ``ChatCompletionClient``."""

    def __init__(self, model_client: ChatCompletionClient, *, close_on_stop: bool = True) -> None:
        self._model_client = model_client
        self._close_on_stop = close_on_stop

    async def start(self) -> None:
        return

    async def stop(self) -> None:
        if self._close_on_stop:
            with suppress(Exception):
                await self._model_client.close()

    async def generate(self, prompt: Prompt) -> str:
        messages = [
            SystemMessage(content=prompt.system),
            UserMessage(content=prompt.user_text(), source="user"),
        ]
        try:
            result = await self._model_client.create(messages)
        except (asyncio.TimeoutError, TimeoutError) as exc:
            raise GenerationTimeout() from exc
        except Exception as exc:  # noqa: BLE001
            raise _classify(exc) from exc

        content = result.content
        if not isinstance(content, str) or not content.strip():
            raise GenerationError("Model returned no advisory text.", transient=True)
        return content.strip()


def _classify(exc: BaseException) -> GenerationError:
    if isinstance(exc, GenerationError):
        return exc
    permanent = is_copilot_auth_error(exc) or is_model_access_error(exc)
    return GenerationError(f"{type(exc).__name__}: {exc}", transient=not permanent)


def _event_content(event: Any) -> str:
    if event is None or getattr(event, "data", None) is None:
        return ""
    content = getattr(event.data, "content", None)
    if isinstance(content, str):
        return content.strip()
    return ""


async def _last_assistant_message(session: Any) -> str:
    messages = await session.get_messages()
    for message in reversed(messages):
        if message.type.value == "assistant.message":
            content = getattr(message.data, "content", None)
            if isinstance(content, str) and content.strip():
                return content.strip()
    return ""


def _normalize_model_name(model: str) -> str:
    if model.startswith("openai/"):
        return model.split("/", 1)[1]
    return model


def build_copilot_client_options(github_token: str, use_logged_in_user: bool) -> dict[str, Any]:
    options: dict[str, Any] = {"use_logged_in_user": use_logged_in_user}
    if github_token and not use_logged_in_user:
        options["github_token"] = github_token
    return options


def is_copilot_auth_error(exc: BaseException | str) -> bool:
    lowered = str(exc).lower()
    if any(marker in lowered for marker in _AUTH_ERROR_MARKERS):
        return True
    return "auth" in lowered and "copilot" in lowered


def is_model_access_error(exc: BaseException | str) -> bool:
    text = str(exc)
    return "No access to model" in text and ("no_access" in text or "Error code: 403" in text)


def copilot_auth_error_message(use_logged_in_user: bool) -> str:
    if use_logged_in_user:
        return "Copilot authentication failed. Run `copilot login` and restart the advisor."
    return (
        "Copilot authentication failed with GITHUB_TOKEN. Check the token's Copilot access, "
        "or set COPILOT_USE_LOGGED_IN_USER=true and run `copilot login`."
    )
