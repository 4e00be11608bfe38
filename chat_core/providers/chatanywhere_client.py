"""ChatAnywhere（OpenAI 兼容）补全服务适配器。

接口与 OpenAI chat/completions 一致：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>（未配置时不带该头，仍然发起请求）
- 请求体: {model, messages, stream}

流式响应按行返回 ``data: {...}`` 记录，最后以 ``data: [DONE]`` 结束；
本模块只负责传输与状态码处理，记录解析交给 StreamDecoder。
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ApiError, NetworkError, RateLimitError
from chat_core.domain.models import ChatRequest, ChatResult, ChatUsage
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.registry import CHATANYWHERE_CONFIG

NO_RESPONSE_TEXT = "No response from AI"


class ChatAnywhereClient:
    """ChatAnywhere 补全服务客户端实现。"""

    name = "chatanywhere"

    def __init__(self, cfg=settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        # Settings 里包含 base_url、api_key、超时等配置
        self._settings = cfg
        self._transport = transport

    # ---- 非流式 ----

    async def chat(self, req: ChatRequest) -> ChatResult:
        payload = self._build_payload(req, stream=False)
        try:
            async with self._client() as client:
                resp = await client.post(self._url(), json=payload, headers=self._headers())
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)
        self._raise_for_status(resp)
        return self._parse_response(resp.json(), req)

    # ---- 流式 ----

    @asynccontextmanager
    async def open_stream(self, req: ChatRequest) -> AsyncIterator[AsyncIterator[bytes]]:
        """打开流式响应，产出原始字节块迭代器。

        读取过程中的网络错误同样包装为 NetworkError。
        """

        payload = self._build_payload(req, stream=True)
        try:
            async with self._client() as client:
                async with client.stream("POST", self._url(), json=payload, headers=self._headers()) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                    self._raise_for_status(resp)
                    yield resp.aiter_bytes()
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)

    # ---- 辅助方法 ----

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.http_timeout,
            trust_env=False,
            transport=self._transport,
        )

    def _url(self) -> str:
        base = getattr(self._settings, "chat_base_url", None) or CHATANYWHERE_CONFIG.base_url
        return f"{base.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = getattr(self._settings, "chat_api_key", None)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    @staticmethod
    def _build_payload(req: ChatRequest, stream: bool) -> Dict[str, Any]:
        return {
            "model": req.model,
            "messages": [m.to_payload() for m in req.messages],
            "stream": stream,
        }

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        logger.warning(
            "Completion API error",
            extra={"extra": {"http_status": resp.status_code, "body": resp.text[:500]}},
        )
        message = f"API Error: {resp.status_code} {resp.reason_phrase}".strip()
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message=message, http_status=429)
        raise ApiError(code="API_ERROR", message=message, http_status=resp.status_code, body=resp.text)

    @staticmethod
    def _parse_response(data: Dict[str, Any], req: ChatRequest) -> ChatResult:
        choices = data.get("choices") or []
        first = choices[0] if choices and isinstance(choices[0], dict) else {}
        message = first.get("message") or {}
        usage_raw = data.get("usage") or {}
        usage = None
        if usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        return ChatResult(
            model=req.model,
            content=message.get("content") or NO_RESPONSE_TEXT,
            finish_reason=first.get("finish_reason"),
            usage=usage,
            raw=data,
        )
