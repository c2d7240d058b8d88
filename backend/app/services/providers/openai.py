"""OpenAI executor."""

from app.services.providers.http import ChatCompletionsExecutor


class OpenAIExecutor(ChatCompletionsExecutor):
    provider = "openai"
    base_url = "https://api.openai.com/v1"
