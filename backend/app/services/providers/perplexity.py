"""Perplexity executor."""

from app.services.providers.http import ChatCompletionsExecutor


class PerplexityExecutor(ChatCompletionsExecutor):
    provider = "perplexity"
    base_url = "https://api.perplexity.ai"
