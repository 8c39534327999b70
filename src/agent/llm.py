"""LLM factory — creates the chat model used to parse chat commands."""

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_openai import ChatOpenAI
from pydantic import SecretStr

from src.config import Settings


def create_llm(
    settings: Settings,
    temperature: float | None = None,
    model_override: str | None = None,
) -> BaseChatModel:
    """Create a chat model instance based on the configured provider.

    Args:
        settings: Application settings (provider, keys, model names).
        temperature: Overrides ``settings.llm_temperature`` when given.
        model_override: Override model name from settings.

    Returns:
        A ChatAnthropic or ChatOpenAI instance.
    """
    temp = settings.llm_temperature if temperature is None else temperature

    if settings.llm_provider == "anthropic":
        return ChatAnthropic(  # pyright: ignore[reportCallIssue]
            model=model_override or settings.anthropic_model,
            temperature=temp,
            max_tokens=settings.llm_max_tokens,
            api_key=SecretStr(settings.anthropic_api_key),
        )

    return ChatOpenAI(
        model=model_override or settings.openai_model,
        temperature=temp,
        max_tokens=settings.llm_max_tokens,  # pyright: ignore[reportCallIssue]
        api_key=SecretStr(settings.openai_api_key),
        base_url=settings.openai_base_url or None,
    )
