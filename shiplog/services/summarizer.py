"""
Summarization service backed by OpenAI or Azure OpenAI.

Each request sends a prompt from ``shiplog.core.prompts`` and validates the
JSON reply against a model from ``shiplog.models.summaries``. Calls are
bounded by ``outbound_timeout_seconds`` and go through a circuit breaker.
"""

import asyncio
from typing import List, Optional, Sequence, Type, TypeVar

import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI
from pydantic import BaseModel, ValidationError

from shiplog.core.prompts import (
    Prompt,
    build_comment_analysis_prompt,
    build_feature_narrator_prompt,
    build_translator_prompt,
    build_weekly_summary_prompt,
)
from shiplog.models.summaries import (
    CommentAnalysis,
    CommitTranslation,
    FeatureNarration,
    WeeklySummary,
)
from shiplog.utils.logging import get_logger
from shiplog.utils.metrics import JobMetrics, track_api_call
from shiplog.utils.resilience import (
    CircuitBreaker,
    ProviderError,
    SummarizationTimeoutError,
    create_llm_circuit_breaker,
)

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


class LLMClient:
    """Wrapper for OpenAI/Azure OpenAI API client."""

    def __init__(self, settings=None, client=None, circuit_breaker: Optional[CircuitBreaker] = None):
        """
        Initialize LLM client based on configuration.

        Args:
            settings: Application settings (defaults to the global instance)
            client: Pre-built async OpenAI client
            circuit_breaker: Breaker shared across calls
        """
        if settings is None:
            from shiplog.config import settings

        self.circuit_breaker = circuit_breaker or create_llm_circuit_breaker()
        self.timeout = settings.outbound_timeout_seconds
        self._settings = settings
        self._client = client

        self.is_azure = bool(settings.azure_openai_endpoint and settings.azure_openai_api_key)
        if self.is_azure:
            self.model = settings.azure_openai_deployment or settings.openai_model
        else:
            self.model = settings.openai_model

    @property
    def client(self):
        """The provider client, created on first use."""
        if self._client is None:
            settings = self._settings
            if self.is_azure:
                self._client = AsyncAzureOpenAI(
                    api_key=settings.azure_openai_api_key,
                    api_version=settings.azure_openai_api_version,
                    azure_endpoint=settings.azure_openai_endpoint,
                )
                logger.info("Initialized Azure OpenAI client")
            else:
                self._client = AsyncOpenAI(api_key=settings.openai_api_key)
                logger.info("Initialized OpenAI client")
        return self._client

    async def complete_json(
        self,
        prompt: Prompt,
        max_tokens: int = 500,
        temperature: float = 0.3,
    ) -> str:
        """
        Run one chat completion that must return a JSON object.

        Raises:
            SummarizationTimeoutError: If the call exceeds the outbound timeout
            ProviderError: If the provider rejects the call or returns nothing
            CircuitBreakerOpenError: If recent calls kept failing
        """
        async def _call_llm():
            try:
                response = await asyncio.wait_for(
                    self.client.chat.completions.create(
                        model=self.model,
                        messages=[
                            {"role": "system", "content": prompt.system},
                            {"role": "user", "content": prompt.user},
                        ],
                        temperature=temperature,
                        max_tokens=max_tokens,
                        response_format={"type": "json_object"},
                    ),
                    timeout=self.timeout,
                )
            except (asyncio.TimeoutError, openai.APITimeoutError) as e:
                raise SummarizationTimeoutError(self.timeout) from e
            except openai.APIError as e:
                raise ProviderError(f"LLM request failed: {e}") from e

            content = response.choices[0].message.content if response.choices else None
            if not content:
                raise ProviderError("LLM returned an empty response")
            return content

        return await self.circuit_breaker.call(_call_llm)


class SummarizationService:
    """Commit translation, feature naming, comment analysis and weekly narrative."""

    def __init__(self, llm: LLMClient, project_context: Optional[str] = None):
        self.llm = llm
        self.project_context = project_context

    async def _request(
        self,
        prompt: Prompt,
        model: Type[M],
        operation: str,
        metrics: Optional[JobMetrics] = None,
        max_tokens: int = 500,
    ) -> M:
        async with track_api_call(metrics, "openai", logger, endpoint=operation):
            content = await self.llm.complete_json(prompt, max_tokens=max_tokens)

        try:
            return model.model_validate_json(content)
        except ValidationError as e:
            raise ProviderError(f"Malformed {operation} response: {e}") from e

    async def translate_commit(
        self,
        message: str,
        diff: str,
        metrics: Optional[JobMetrics] = None,
    ) -> CommitTranslation:
        """Translate a commit into a stakeholder-facing summary."""
        prompt = build_translator_prompt(message, diff, self.project_context)
        translation = await self._request(prompt, CommitTranslation, "translate_commit", metrics)
        if translation.action == "include" and not translation.summary:
            raise ProviderError("Translation marked include without a summary")
        return translation

    async def name_feature(
        self,
        pr_title: str,
        pr_number: int,
        translations: Sequence[str],
        metrics: Optional[JobMetrics] = None,
    ) -> FeatureNarration:
        prompt = build_feature_narrator_prompt(pr_title, pr_number, translations, self.project_context)
        return await self._request(prompt, FeatureNarration, "name_feature", metrics)

    async def analyze_comment(
        self,
        pr_title: str,
        pr_number: int,
        comment_body: str,
        metrics: Optional[JobMetrics] = None,
    ) -> CommentAnalysis:
        """Classify a PR comment as adding, resolving or not touching a blocker."""
        prompt = build_comment_analysis_prompt(pr_title, pr_number, comment_body)
        analysis = await self._request(prompt, CommentAnalysis, "analyze_comment", metrics)
        mentioned: List[str] = [u.lstrip("@") for u in analysis.mentioned_users if u.strip()]
        return analysis.model_copy(update={"mentioned_users": mentioned})

    async def summarize_week(
        self,
        shipped: Sequence[dict],
        blockers: Sequence[dict],
        resolved: Sequence[dict],
        in_progress: Sequence[dict],
        include_next_week: bool = True,
        metrics: Optional[JobMetrics] = None,
    ) -> WeeklySummary:
        prompt = build_weekly_summary_prompt(
            shipped, blockers, resolved, in_progress, include_next_week, self.project_context
        )
        return await self._request(prompt, WeeklySummary, "summarize_week", metrics, max_tokens=1200)
