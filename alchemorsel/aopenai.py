"""Thin async client for OpenAI compatible chat completion apis."""

from typing import Any, Self

import httpx


MAX_TOKENS = 3000
TIMEOUT = 60 * 2


class CompletionError(Exception):
    """The api answered, but not with a completion."""


def openai_client_factory(
    *,
    base_url: str,
    token: str | None,
    timeout: float = TIMEOUT,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url,
        headers={
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        },
        timeout=timeout,
    )


class ChatMsg:
    def __init__(self, *, role: str, content: str, **_: Any) -> None:
        self.role = role
        self.content = content

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


class Chat:
    """One conversation. Not shared between requests, messages pile up."""

    @classmethod
    def from_system_prompt(
        cls,
        prompt: str,
        *,
        model: str,
        client: httpx.AsyncClient,
        max_tokens: int = MAX_TOKENS,
        temperature: float = 0.1,
        json_mode: bool = True,
    ) -> Self:
        messages: list[ChatMsg] = [ChatMsg(role="system", content=prompt)]
        return cls(
            model=model,
            messages=messages,
            client=client,
            max_tokens=max_tokens,
            temperature=temperature,
            json_mode=json_mode,
        )

    def __init__(
        self,
        *,
        model: str,
        client: httpx.AsyncClient,
        messages: list[ChatMsg] | None = None,
        max_tokens: int = MAX_TOKENS,
        temperature: float = 0.1,
        json_mode: bool = True,
    ) -> None:
        self.model = model
        self._messages: list[ChatMsg] = [] if messages is None else messages
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.json_mode = json_mode
        self._client = client

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_dict() for m in self._messages],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if self.json_mode:
            data["response_format"] = {"type": "json_object"}
        return data

    async def _chat_raw(self, data: dict[str, Any]) -> list[ChatMsg]:
        resp = await self._client.post("chat/completions", json=data)
        if resp.is_error:
            raise CompletionError(
                f"Problem creating completion. {resp.status_code} {resp.text[:500]}"
            )
        try:
            body = resp.json()
        except ValueError as exc:
            raise CompletionError("Completion response is not JSON.") from exc
        if "error" in body:
            raise CompletionError(f"Problem creating completion. {body['error']}")
        choices = body.get("choices") or []
        if not choices:
            raise CompletionError("Completion has no choices.")
        try:
            return [ChatMsg(**c["message"]) for c in choices]
        except (KeyError, TypeError) as exc:
            raise CompletionError(f"Malformed completion choice. {choices}") from exc

    async def send_messages(self) -> list[ChatMsg]:
        return await self._chat_raw(self.to_dict())

    async def chat(self, msg: str | ChatMsg) -> str:
        chat_msg = ChatMsg(role="user", content=msg) if isinstance(msg, str) else msg
        self._messages.append(chat_msg)
        chat_msgs = await self.send_messages()
        self._messages.extend(chat_msgs)
        s = ""
        for part in chat_msgs:
            if not isinstance(part.content, str):
                raise CompletionError("Non-string response content not supported.")
            s += part.content
        return s
