"""Google Gemini executor."""

from typing import Any

from app.services.providers.base import ExecutionResult, TaskRequest
from app.services.providers.http import SYSTEM_PROMPT, HTTPTaskExecutor

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class GeminiExecutor(HTTPTaskExecutor):
    provider = "gemini"

    def build_request(self, request: TaskRequest) -> tuple[str, dict[str, str], dict[str, Any]]:
        url = f"{GEMINI_BASE_URL}/models/{self.model}:generateContent"
        headers = {"x-goog-api-key": self.api_key or "", "Content-Type": "application/json"}
        body = {
            "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
            "contents": [{"role": "user", "parts": [{"text": request.prompt_text}]}],
            "generationConfig": {"maxOutputTokens": 1500, "temperature": 0.7},
        }
        return url, headers, body

    def parse_response(self, data: dict[str, Any]) -> ExecutionResult:
        parts = data["candidates"][0]["content"]["parts"]
        usage = data.get("usageMetadata") or {}
        return ExecutionResult(
            success=True,
            response_text="".join(p.get("text", "") for p in parts),
            model=data.get("modelVersion", self.model),
            token_in=usage.get("promptTokenCount"),
            token_out=usage.get("candidatesTokenCount"),
            raw={"finishReason": data["candidates"][0].get("finishReason")},
        )
