"""Chat model backend used by the agent loop and the summarizer."""

import logging
from typing import Awaitable, Callable, Protocol, Union

import openai

logger = logging.getLogger(__name__)

Message = dict[str, str]
TokenCallback = Callable[[str], Union[None, Awaitable[None]]]


class ModelCallFailed(RuntimeError):
    """The chat model could not produce a completion."""

    pass


class ChatProvider(Protocol):
    """Anything that turns a message history into a reply."""

    async def complete(
        self,
        messages: list[Message],
        on_token: TokenCallback | None = None,
    ) -> str: ...


class OpenAIChatProvider:
    """Chat completions against OpenAI or an OpenAI-compatible local server.

    The client is created on first use so a missing key only matters when
    the agent actually runs.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float = 0.2,
        timeout: float = 60.0,
        client: openai.AsyncOpenAI | None = None,
    ):
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.temperature = temperature
        self.timeout = timeout
        self._client = client
        self._client_owned = client is None
        self.last_usage_tokens = 0
        logger.info(
            "OpenAIChatProvider initialized: model=%s, base_url=%s",
            model,
            base_url or "default",
        )

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            if not self.api_key and not self.base_url:
                raise ModelCallFailed("No API key configured (set OPENAI_API_KEY or agent.api_key)")
            self._client = openai.AsyncOpenAI(
                # Local OpenAI-compatible servers accept any key.
                api_key=self.api_key or "not-needed",
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._client

    async def complete(
        self,
        messages: list[Message],
        on_token: TokenCallback | None = None,
    ) -> str:
        """Return the assistant reply for the given history.

        When on_token is given the reply is streamed and each delta is
        passed to it as it arrives.

        Raises:
            ModelCallFailed: On missing credentials or any API error
        """
        client = self._get_client()
        logger.debug("Requesting completion (%d messages, stream=%s)", len(messages), on_token is not None)

        try:
            if on_token is None:
                response = await client.chat.completions.create(
                    model=self.model,
                    temperature=self.temperature,
                    messages=messages,
                )
                usage = getattr(response, "usage", None)
                tokens = getattr(usage, "total_tokens", 0)
                self.last_usage_tokens = tokens if isinstance(tokens, int) else 0
                if not response.choices:
                    return ""
                return (response.choices[0].message.content or "").strip()

            parts: list[str] = []
            stream = await client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                messages=messages,
                stream=True,
            )
            async for event in stream:
                if not event.choices:
                    continue
                delta = event.choices[0].delta.content or ""
                if not delta:
                    continue
                parts.append(delta)
                result = on_token(delta)
                if result is not None:
                    await result
            return "".join(parts).strip()
        except openai.OpenAIError as e:
            logger.error("Chat completion failed: %s", e)
            raise ModelCallFailed(str(e)) from e

    async def aclose(self) -> None:
        if self._client is not None and self._client_owned:
            await self._client.close()
        self._client = None
