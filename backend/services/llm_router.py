import asyncio
import base64
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from config import Settings
from backend.services.inference import InferenceError, UnsupportedContentError

logger = logging.getLogger("reqtrace")


class LLMRateLimitError(InferenceError):
    pass


JSON_SYSTEM = """You are a precise requirements and QA analyst.
Respond with JSON only, matching this JSON schema:
{schema}
If the schema describes an array, return an object of the form {{"items": [...]}}.
No markdown, no commentary.
"""

TEXT_SYSTEM = "You are an expert QA automation engineer."


def wrap_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    # Providers want an object at the root of structured output
    if schema.get("type") == "array":
        return {"type": "object", "properties": {"items": schema}, "required": ["items"]}
    return schema


def is_text_mime(mime_type: str) -> bool:
    return mime_type.startswith("text/") or mime_type in ("application/json", "application/xml")


def data_url(content: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(content).decode('ascii')}"


class _RetryingHTTP:
    """POST with retries on 429 / 5xx / read timeouts, exponential backoff."""

    name = "provider"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    async def _post(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        timeout_s: float = 30.0,
        retries: int = 1,
        backoff_s: float = 0.8,
    ) -> Dict[str, Any]:
        last_text = None

        for attempt in range(retries + 1):
            try:
                async with httpx.AsyncClient(timeout=timeout_s, transport=self.transport) as client:
                    r = await client.post(url, headers=headers, json=payload)
            except httpx.ReadTimeout:
                if attempt >= retries:
                    raise
                await asyncio.sleep(backoff_s * (2 ** attempt))
                continue

            last_text = r.text

            if r.status_code == 429:
                if attempt >= retries:
                    raise LLMRateLimitError(f"{self.name} 429: {r.text}")
                await asyncio.sleep(backoff_s * (2 ** attempt))
                continue

            if 500 <= r.status_code < 600:
                if attempt >= retries:
                    r.raise_for_status()
                await asyncio.sleep(backoff_s * (2 ** attempt))
                continue

            r.raise_for_status()
            return r.json()

        raise InferenceError(f"{self.name} call failed. last={last_text}")


class LLMHTTP(_RetryingHTTP):
    """
    OpenAI-compatible provider (Groq/OpenAI)
    Accepts either:
      - base_url = https://api.openai.com/v1
      - OR base_url = https://api.openai.com/v1/chat/completions
    """
    def __init__(self, api_key: str, base_url: str, model: str, name: str, transport=None):
        super().__init__(transport)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.name = name

    def _chat_url(self) -> str:
        if self.base_url.endswith("/chat/completions"):
            return self.base_url
        return f"{self.base_url}/chat/completions"

    @staticmethod
    def file_part(content: bytes, mime_type: str, file_name: str = "") -> Dict[str, Any]:
        if is_text_mime(mime_type):
            return {"type": "text", "text": content.decode("utf-8", errors="ignore")}
        if mime_type.startswith("image/"):
            return {"type": "image_url", "image_url": {"url": data_url(content, mime_type)}}
        return {
            "type": "file",
            "file": {"filename": file_name or "document", "file_data": data_url(content, mime_type)},
        }

    async def chat(
        self,
        system: str,
        user_content: Any,
        json_mode: bool = True,
        temperature: float = 0.0,
        max_tokens: int = 4096,
        timeout_s: float = 120.0,
        retries: int = 1,
        backoff_s: float = 0.8,
    ) -> str:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        payload: Dict[str, Any] = {
            "model": self.model,
            "temperature": float(temperature),
            "max_tokens": int(max_tokens),
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user_content},
            ],
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        data = await self._post(
            self._chat_url(), payload, headers=headers,
            timeout_s=timeout_s, retries=retries, backoff_s=backoff_s,
        )
        return data["choices"][0]["message"]["content"] or ""

    async def extract(self, content, mime_type, instruction, schema, file_name="", **kw) -> str:
        parts = [{"type": "text", "text": instruction}, self.file_part(content, mime_type, file_name)]
        system = JSON_SYSTEM.format(schema=json.dumps(wrap_schema(schema)))
        return await self.chat(system, parts, **kw)

    async def generate(self, prompt, schema, **kw) -> str:
        system = JSON_SYSTEM.format(schema=json.dumps(wrap_schema(schema)))
        return await self.chat(system, prompt, **kw)

    async def complete_text(self, prompt, **kw) -> str:
        return await self.chat(TEXT_SYSTEM, prompt, json_mode=False, **kw)


class OllamaHTTP(_RetryingHTTP):
    """
    Native Ollama API:
      POST http://127.0.0.1:11434/api/chat
    """

    def __init__(self, base_url: str, model: str, name: str = "ollama", transport=None):
        super().__init__(transport)
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.name = name

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        schema: Optional[Dict[str, Any]] = None,
        temperature: float = 0.0,
        timeout_s: float = 180.0,   # longer for local
        retries: int = 1,
        backoff_s: float = 1.0,
        **_ignored,
    ) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "stream": False,
            "messages": messages,
            "options": {"temperature": float(temperature)},
        }
        if schema is not None:
            payload["format"] = wrap_schema(schema)

        data = await self._post(
            f"{self.base_url}/api/chat", payload,
            timeout_s=timeout_s, retries=retries, backoff_s=backoff_s,
        )
        return (data.get("message") or {}).get("content") or ""

    async def extract(self, content, mime_type, instruction, schema, file_name="", **kw) -> str:
        if is_text_mime(mime_type):
            msg = {"role": "user", "content": f"{instruction}\n\n{content.decode('utf-8', errors='ignore')}"}
        elif mime_type.startswith("image/"):
            msg = {"role": "user", "content": instruction, "images": [base64.b64encode(content).decode("ascii")]}
        else:
            raise UnsupportedContentError(f"{self.name} cannot read {mime_type}")
        return await self.chat([msg], schema=schema, **kw)

    async def generate(self, prompt, schema, **kw) -> str:
        return await self.chat([{"role": "user", "content": prompt}], schema=schema, **kw)

    async def complete_text(self, prompt, **kw) -> str:
        return await self.chat(
            [{"role": "system", "content": TEXT_SYSTEM}, {"role": "user", "content": prompt}], **kw
        )


class LLMRouter:
    """
    Inference collaborator over every configured provider.

    Provider order:
      1) Groq (if GROQ_API_KEY)
      2) OpenAI (if OPENAI_API_KEY)
      3) Ollama (if OLLAMA_MODEL)   <-- last, but works offline
    """

    def __init__(self, providers: Optional[List[Any]] = None, timeout_s: Optional[float] = None):
        self.timeout_s = Settings.LLM_TIMEOUT_S if timeout_s is None else timeout_s
        self.providers: List[Any] = list(providers) if providers is not None else self._from_settings()

        if not self.providers:
            raise RuntimeError("No LLM providers configured. Set GROQ_API_KEY and/or OPENAI_API_KEY and/or OLLAMA_MODEL.")

    @staticmethod
    def _from_settings() -> List[Any]:
        providers: List[Any] = []
        if Settings.GROQ_API_KEY:
            providers.append(
                LLMHTTP(
                    api_key=Settings.GROQ_API_KEY,
                    base_url="https://api.groq.com/openai/v1/chat/completions",
                    model=Settings.GROQ_MODEL,
                    name="groq",
                )
            )
        if Settings.OPENAI_API_KEY:
            providers.append(
                LLMHTTP(
                    api_key=Settings.OPENAI_API_KEY,
                    base_url=Settings.OPENAI_BASE_URL,
                    model=Settings.OPENAI_MODEL,
                    name="openai",
                )
            )
        if Settings.OLLAMA_MODEL:
            providers.append(OllamaHTTP(base_url=Settings.OLLAMA_BASE_URL, model=Settings.OLLAMA_MODEL))
        return providers

    def providers_status(self) -> Dict[str, Any]:
        return {
            "configured": [p.name for p in self.providers],
            "models": {p.name: p.model for p in self.providers},
        }

    async def _route(self, method: str, *args, **kwargs) -> Tuple[str, str, List[str]]:
        trace: List[str] = []

        for p in self.providers:
            try:
                trace.append(f"try:{p.name}:{p.model}")
                out = await getattr(p, method)(*args, timeout_s=self.timeout_s, **kwargs)
                trace.append(f"ok:{p.name}")
                return out, p.name, trace
            except Exception as e:
                msg = str(e)
                if len(msg) > 200:
                    msg = msg[:200] + "…"
                trace.append(f"fail:{p.name}:{type(e).__name__}:{msg}")
                continue

        logger.warning("All LLM providers failed: %s", " | ".join(trace))
        raise InferenceError("All LLM providers failed. trace=" + " | ".join(trace))

    async def extract(self, content: bytes, mime_type: str, instruction: str, schema: Dict[str, Any], file_name: str = "") -> str:
        out, provider, _trace = await self._route("extract", content, mime_type, instruction, schema, file_name)
        logger.debug("extract via %s (%d chars)", provider, len(out))
        return out

    async def generate(self, prompt: str, schema: Dict[str, Any]) -> str:
        out, provider, _trace = await self._route("generate", prompt, schema)
        logger.debug("generate via %s (%d chars)", provider, len(out))
        return out

    async def complete_text(self, prompt: str) -> str:
        out, _provider, _trace = await self._route("complete_text", prompt)
        return out
