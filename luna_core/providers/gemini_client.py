"""Gemini Provider 适配器。

本模块负责：

1. 接收统一的 ChatRequest / 动作参数。
2. 将其转换为 Gemini REST API 的请求格式（generateContent、
   streamGenerateContent、predict、predictLongRunning 等）。
3. 调用 HTTP 接口并处理网络/API 异常。
4. 将响应 JSON 解析为统一的 ChatResult / ChatStreamChunk / VideoOperation。

另外提供 GeminiChat：以既有消息为种子的多轮对话上下文，
每次完整的流式回合结束后把该回合追加到自身历史中。
"""

import json
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import httpx

from luna_core.config.settings import settings as default_settings
from luna_core.domain.conversation import Attachment, Message
from luna_core.domain.exceptions import (
    ApiError,
    MissingPayloadError,
    NetworkError,
    RateLimitError,
    ValidationError,
)
from luna_core.domain.models import (
    ChatRequest,
    ChatResult,
    ChatStreamChunk,
    ChatUsage,
    Content,
    GeneratedImage,
    GroundingChunk,
    InlineData,
    Part,
    VideoOperation,
)
from luna_core.providers.registry import GEMINI_CONFIG, ModelConfig

MIN_API_KEY_LENGTH = 10


class GeminiChat:
    """有状态的多轮对话上下文（只存在于内存，不持有会话本身）。"""

    def __init__(self, client: "GeminiClient", history: List[Content], system_instruction: str):
        self._client = client
        self._history = list(history)
        self._system_instruction = system_instruction

    @property
    def history(self) -> List[Content]:
        return list(self._history)

    def send_stream(self, parts: List[Part]) -> Iterator[str]:
        user_content = Content(role="user", parts=list(parts))
        req = ChatRequest(
            model="chat",
            contents=self._history + [user_content],
            system_instruction=self._system_instruction,
        )
        collected: List[str] = []
        stream = self._client.chat_stream(req)
        try:
            for chunk in stream:
                if not chunk.text:
                    continue
                collected.append(chunk.text)
                yield chunk.text
        finally:
            stream.close()
        # 只有完整消费的回合才写入上下文历史；中途停止的回合直接丢弃
        self._history.append(user_content)
        self._history.append(Content(role="model", parts=[Part(text="".join(collected))]))


class GeminiClient:
    """Gemini 提供方客户端实现。

    缺少 API Key 时构造即失败（ValidationError），
    上层据此进入“初始化失败”模式，不会再发起任何远端调用。
    """

    name = "gemini"

    def __init__(self, settings=default_settings):
        if not getattr(settings, "gemini_api_key", None):
            raise ValidationError(code="MISSING_API_KEY", message="GEMINI_API_KEY environment variable is not set")
        if len(settings.gemini_api_key.strip()) < MIN_API_KEY_LENGTH:
            raise ValidationError(code="INVALID_API_KEY", message="GEMINI_API_KEY looks malformed (too short)")
        self._settings = settings

    # ---- 对话 ----

    def open_chat(self, history: Sequence[Message], system_instruction: str) -> GeminiChat:
        contents = [
            Content(role=m.role, parts=[Part(text=m.text)])
            for m in history
            # 带图片/视频/引用的消息以及空占位消息无法回放到远端历史
            if m.is_plain_text and m.text
        ]
        return GeminiChat(self, contents, system_instruction)

    def chat(self, req: ChatRequest) -> ChatResult:
        """执行一次非流式 generateContent 调用。"""

        model_cfg = GEMINI_CONFIG.models[req.model]
        payload = self._build_payload(req, model_cfg)
        data = self._post_json(f"{self._base_url}/models/{model_cfg.provider_model}:generateContent", payload)
        return self._parse_response(data, req)

    def chat_stream(self, req: ChatRequest) -> Iterable[ChatStreamChunk]:
        """执行一次流式调用（SSE），逐步 yield ChatStreamChunk。"""

        model_cfg = GEMINI_CONFIG.models[req.model]
        payload = self._build_payload(req, model_cfg)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    f"{self._base_url}/models/{model_cfg.provider_model}:streamGenerateContent",
                    params={"alt": "sse"},
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                    self._raise_for_status(resp)
                    for line in resp.iter_lines():
                        if not line:
                            continue
                        data_str = line
                        if data_str.startswith("data:"):
                            data_str = data_str[5:].strip()
                        else:
                            data_str = data_str.strip()
                        if not data_str or data_str == "[DONE]":
                            continue
                        try:
                            payload_chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        yield self._parse_stream_chunk(payload_chunk, req)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 单次动作 ----

    def generate_text(self, prompt: str) -> str:
        req = ChatRequest(model="title", contents=[Content(role="user", parts=[Part(text=prompt)])])
        return self.chat(req).text

    def generate_image(self, prompt: str) -> GeneratedImage:
        model_cfg = GEMINI_CONFIG.models["image"]
        payload = {
            "instances": [{"prompt": prompt}],
            "parameters": {"sampleCount": 1, "outputMimeType": "image/jpeg"},
        }
        data = self._post_json(f"{self._base_url}/models/{model_cfg.provider_model}:predict", payload)
        predictions = data.get("predictions") or []
        first = predictions[0] if predictions else {}
        image_bytes = first.get("bytesBase64Encoded")
        if not image_bytes:
            raise MissingPayloadError(code="MISSING_IMAGE", message="API did not return an image.")
        return GeneratedImage(mime_type=first.get("mimeType") or "image/jpeg", data=image_bytes)

    def edit_image(self, prompt: str, attachment: Attachment) -> ChatResult:
        req = ChatRequest(
            model="image-edit",
            contents=[
                Content(
                    role="user",
                    parts=[Part(inline_data=attachment.to_inline_data()), Part(text=prompt)],
                )
            ],
            response_modalities=["IMAGE", "TEXT"],
        )
        return self.chat(req)

    def search(self, query: str) -> ChatResult:
        req = ChatRequest(
            model="search",
            contents=[Content(role="user", parts=[Part(text=query)])],
            tools=[{"google_search": {}}],
        )
        return self.chat(req)

    def start_video(self, prompt: str) -> VideoOperation:
        model_cfg = GEMINI_CONFIG.models["video"]
        data = self._post_json(
            f"{self._base_url}/models/{model_cfg.provider_model}:predictLongRunning",
            {"instances": [{"prompt": prompt}]},
        )
        op = self._parse_operation(data)
        if not op.name:
            raise MissingPayloadError(code="MISSING_OPERATION", message="API did not return a video operation.")
        return op

    def get_video_operation(self, name: str) -> VideoOperation:
        resp = self._request("GET", f"{self._base_url}/{name}")
        return self._parse_operation(resp.json())

    def download(self, uri: str) -> bytes:
        resp = self._request("GET", uri, follow_redirects=True)
        return resp.content

    # ---- 辅助方法 ----

    @property
    def _base_url(self) -> str:
        return (getattr(self._settings, "gemini_base_url", None) or GEMINI_CONFIG.base_url).rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self._settings.gemini_api_key,
            "Content-Type": "application/json",
        }

    def _post_json(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = self._request("POST", url, json=payload)
        return resp.json()

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                if method == "GET":
                    resp = client.get(url, headers=self._headers(), **kwargs)
                else:
                    resp = client.post(url, headers=self._headers(), **kwargs)
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        self._raise_for_status(resp)
        return resp

    @staticmethod
    def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Gemini rate limit", http_status=429)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)

    def _build_payload(self, req: ChatRequest, model_cfg: ModelConfig) -> Dict[str, Any]:
        """将 ChatRequest 转成 generateContent 所需的请求 JSON。"""

        payload: Dict[str, Any] = {
            "contents": [self._content_to_payload(c) for c in req.contents],
        }
        if req.system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": req.system_instruction}]}
        generation_config: Dict[str, Any] = {}
        temperature = req.temperature if req.temperature is not None else model_cfg.default_temperature
        if temperature is not None:
            generation_config["temperature"] = temperature
        if req.response_modalities:
            generation_config["responseModalities"] = list(req.response_modalities)
        if generation_config:
            payload["generationConfig"] = generation_config
        if req.tools:
            payload["tools"] = list(req.tools)
        return payload

    @staticmethod
    def _content_to_payload(content: Content) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = []
        for part in content.parts:
            if part.inline_data is not None:
                parts.append({"inlineData": {"mimeType": part.inline_data.mime_type, "data": part.inline_data.data}})
            elif part.text is not None:
                parts.append({"text": part.text})
        return {"role": content.role, "parts": parts}

    @staticmethod
    def _part_from_payload(raw: Dict[str, Any]) -> Part:
        inline = raw.get("inlineData")
        if isinstance(inline, dict) and inline.get("data"):
            return Part(inline_data=InlineData(mime_type=inline.get("mimeType") or "image/png", data=inline["data"]))
        return Part(text=raw.get("text"))

    @staticmethod
    def _parse_usage(data: Dict[str, Any]) -> Optional[ChatUsage]:
        usage_raw = data.get("usageMetadata") or {}
        if not usage_raw:
            return None
        return ChatUsage(
            prompt_tokens=usage_raw.get("promptTokenCount", 0),
            completion_tokens=usage_raw.get("candidatesTokenCount", 0),
            total_tokens=usage_raw.get("totalTokenCount", 0),
        )

    def _parse_response(self, data: Dict[str, Any], req: ChatRequest) -> ChatResult:
        """将原始响应 JSON 解析为统一的 ChatResult（只取第一个候选）。"""

        candidates = data.get("candidates") or []
        candidate = candidates[0] if candidates else {}
        parts = [self._part_from_payload(p) for p in (candidate.get("content") or {}).get("parts") or []]
        chunks: List[GroundingChunk] = []
        for raw in (candidate.get("groundingMetadata") or {}).get("groundingChunks") or []:
            web = raw.get("web") or {}
            if web:
                chunks.append(GroundingChunk(uri=web.get("uri") or "", title=web.get("title") or ""))
        return ChatResult(
            model=req.model,
            parts=parts,
            grounding_chunks=chunks,
            finish_reason=candidate.get("finishReason"),
            usage=self._parse_usage(data),
            raw=data,
        )

    def _parse_stream_chunk(self, data: Dict[str, Any], req: ChatRequest) -> ChatStreamChunk:
        """解析流式响应中的单条增量。"""

        result = self._parse_response(data, req)
        return ChatStreamChunk(
            model=req.model,
            text=result.text,
            finish_reason=result.finish_reason,
            usage=result.usage,
            raw=data,
        )

    @staticmethod
    def _parse_operation(data: Dict[str, Any]) -> VideoOperation:
        error = data.get("error")
        error_message = None
        if isinstance(error, dict):
            error_message = error.get("message") or json.dumps(error, ensure_ascii=False)
        response = data.get("response") or {}
        video_response = response.get("generateVideoResponse") or response
        samples = video_response.get("generatedSamples") or video_response.get("generatedVideos") or []
        video_uri = None
        if samples:
            video_uri = ((samples[0] or {}).get("video") or {}).get("uri")
        return VideoOperation(
            name=data.get("name") or "",
            done=bool(data.get("done")),
            video_uri=video_uri,
            error=error_message,
            raw=data,
        )
