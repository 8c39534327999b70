"""LangChain callback handler that records LLM metrics for command parsing.

Create a fresh ``MetricsCallbackHandler`` per interpreter call and pass it via
``config["callbacks"]``.  All callback methods are wrapped in try/except —
metrics collection must never break command handling.
"""

import logging
from typing import Any
from uuid import UUID

from langchain_core.callbacks import BaseCallbackHandler
from langchain_core.outputs import LLMResult

from src.observability.metrics import (
    COST_PER_TOKEN,
    DEFAULT_COST_PER_TOKEN,
    LLM_CALLS_TOTAL,
    LLM_ESTIMATED_COST,
    LLM_TOKEN_USAGE,
)

logger = logging.getLogger(__name__)


def _token_usage(response: LLMResult) -> tuple[int, int, str]:
    """Extract (prompt, completion, model) from either provider's result shape."""
    llm_output = response.llm_output or {}
    model_name: str = llm_output.get("model_name") or llm_output.get("model") or ""

    # OpenAI: llm_output["token_usage"] = {prompt_tokens, completion_tokens}
    usage: dict[str, int] | None = llm_output.get("token_usage")
    if usage:
        return usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0), model_name

    # Anthropic: llm_output["usage"] = {input_tokens, output_tokens}
    usage = llm_output.get("usage")
    if usage:
        return usage.get("input_tokens", 0), usage.get("output_tokens", 0), model_name

    return 0, 0, model_name


class MetricsCallbackHandler(BaseCallbackHandler):
    """Counts LLM calls, token usage, and estimated cost."""

    def on_llm_end(
        self,
        response: LLMResult,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        **kwargs: Any,
    ) -> None:
        try:
            LLM_CALLS_TOTAL.labels(status="success").inc()

            prompt_tokens, completion_tokens, model_name = _token_usage(response)
            if not prompt_tokens and not completion_tokens:
                return

            LLM_TOKEN_USAGE.labels(type="prompt").inc(prompt_tokens)
            LLM_TOKEN_USAGE.labels(type="completion").inc(completion_tokens)

            pricing = DEFAULT_COST_PER_TOKEN
            for prefix, costs in COST_PER_TOKEN.items():
                if model_name.startswith(prefix):
                    pricing = costs
                    break

            cost = (prompt_tokens * pricing["prompt"]) + (completion_tokens * pricing["completion"])
            LLM_ESTIMATED_COST.inc(cost)
        except Exception:
            logger.debug("metrics: on_llm_end failed", exc_info=True)

    def on_llm_error(
        self,
        error: BaseException,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        **kwargs: Any,
    ) -> None:
        try:
            LLM_CALLS_TOTAL.labels(status="error").inc()
        except Exception:
            logger.debug("metrics: on_llm_error failed", exc_info=True)
