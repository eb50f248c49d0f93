"""Completion dispatcher: admission, budgeting, image routing and SSE relay."""

import json
import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import openai
import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from app.core.config import settings
from app.core.database import async_session_factory
from app.core.exceptions import TokenQuotaExceededError, UpstreamError
from app.core.kv_store import KeyValueStore
from app.repositories.model_repo import ModelRepository
from app.schemas.completion_schema import ChatMessageIn, CompletionRequest
from app.services.model_catalog import IMAGE_MODEL_ID, ModelCatalog
from app.services.rate_limit_service import (
    RateLimitConfig,
    RateLimitService,
    blocked_message,
)
from app.services.token_budget_service import TokenBudgeter

logger = structlog.get_logger()

DONE_FRAME = "data: [DONE]\n\n"
THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
INTENT_WINDOW = 3

GENERATE_IMAGE_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "generateImage",
        "description": (
            "Generate an image when the user explicitly asks for a picture, "
            "drawing, photo or other visual artwork."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": "Detailed description of the image to generate.",
                },
                "negative": {
                    "type": "string",
                    "description": "Things that should not appear in the image.",
                },
            },
            "required": ["prompt"],
        },
    },
}

INTENT_SYSTEM_PROMPT = (
    "Decide whether the user is asking for an image. If they are, call "
    "generateImage with a detailed prompt. Otherwise answer with the single word NO."
)


class DispatchState(StrEnum):
    """Steps a completion request passes through."""

    AUTHENTICATING = "authenticating"
    RATE_LIMIT_CHECKING = "rate_limit_checking"
    MODEL_VALIDATING = "model_validating"
    BUDGETING = "budgeting"
    IMAGE_INTENT_ROUTING = "image_intent_routing"
    STREAMING = "streaming"
    USAGE_RECORDING = "usage_recording"
    DONE = "done"
    BLOCKED = "blocked"
    MODEL_UNAVAILABLE = "model_unavailable"
    BUDGET_EXCEEDED = "budget_exceeded"
    UPSTREAM_ERROR = "upstream_error"


@dataclass(frozen=True)
class Caller:
    """Who is asking: a user id when signed in, else the client IP."""

    identifier: str
    user_id: int | None = None

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None


@dataclass
class PreparedCompletion:
    """Everything needed to stream one admitted request."""

    caller: Caller
    rate_config: RateLimitConfig
    model: dict[str, Any]
    messages: list[ChatMessageIn]
    system_prompt: str
    temperature: float | None
    top_p: float | None
    prompt_tokens: int
    reserved_tokens: int = 0
    state: DispatchState = DispatchState.AUTHENTICATING
    completion_text: list[str] = field(default_factory=list)
    upstream_total_tokens: int | None = None

    @property
    def model_id(self) -> str:
        return self.model["model_id"]

    @property
    def upstream_model(self) -> str:
        return self.model.get("api_id") or self.model["model_id"]


def friendly_upstream_message(message: str) -> str:
    """Map common provider failures to user-facing text."""
    lowered = message.lower()
    if "rate limit" in lowered or "quota" in lowered:
        return "Rate limit exceeded. Please try again later."
    if "invalid api key" in lowered or "authentication" in lowered:
        return "Authentication failed. Please check your API key."
    if "context length" in lowered or "context_length" in lowered:
        return "The conversation is too long. Please start a new chat."
    return message


def sse_frame(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def content_frame(content: str, model: str | None = None) -> str:
    """Minimal chat-completion chunk carrying one content delta."""
    payload: dict[str, Any] = {
        "object": "chat.completion.chunk",
        "choices": [{"index": 0, "delta": {"content": content}, "finish_reason": None}],
    }
    if model:
        payload["model"] = model
    return sse_frame(payload)


def image_generation_envelope(job_id: str, prompt: str, negative: str) -> str:
    return (
        f"<image_generation> jobId='{job_id}' prompt='{prompt}' "
        f"negative='{negative}'</image_generation>"
    )


class ReasoningSplicer:
    """Folds out-of-band reasoning deltas into the content stream once.

    Reasoning that arrives before the first content token is wrapped in a
    single ``<think>`` block; reasoning after content has started is dropped.
    """

    def __init__(self) -> None:
        self.opened = False
        self.closed = False
        self.content_started = False

    def feed(self, reasoning: str | None, content: str | None) -> str:
        out = ""
        if reasoning and not self.content_started and not self.closed:
            if not self.opened:
                out += THINK_OPEN
                self.opened = True
            out += reasoning
        if content:
            if self.opened and not self.closed:
                out += THINK_CLOSE
                self.closed = True
            self.content_started = True
            out += content
        return out

    def finish(self) -> str:
        if self.opened and not self.closed:
            self.closed = True
            return THINK_CLOSE
        return ""


class CompletionService:
    """Admits, budgets and relays one chat completion."""

    def __init__(
        self,
        rate_limiter: RateLimitService,
        catalog: ModelCatalog,
        client: openai.AsyncOpenAI,
        intent_llm: BaseChatModel | None = None,
        budgeter: TokenBudgeter | None = None,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._catalog = catalog
        self._client = client
        self._intent_llm = intent_llm
        self._budgeter = budgeter or TokenBudgeter()

    async def prepare(self, request: CompletionRequest, caller: Caller) -> PreparedCompletion:
        """Run the pre-stream steps; raises on any terminal failure."""
        tier = await self._catalog.get_user_tier(caller.user_id)
        config = self._rate_limiter.config_for(caller.authenticated, tier)

        estimate = sum(self._budgeter.count(m.content) for m in request.messages)
        status = await self._rate_limiter.check_and_consume(
            caller.identifier, config, estimated_tokens=estimate
        )
        if status.blocked:
            logger.info("Completion blocked by rate limit", identifier=caller.identifier)
            raise TokenQuotaExceededError(
                limit=status.limit,
                used=status.used,
                reset_time_ms=status.reset_time_ms,
                requires_verification=not caller.authenticated,
                message=blocked_message(status, caller.authenticated),
            )
        reserving = self._rate_limiter.admission == "reserve" and not self._rate_limiter.bypass
        reserved = estimate if reserving else 0

        try:
            model = await self._catalog.resolve_model(caller.user_id, request.model)

            system_prompt = (request.system or "").strip() or settings.llm.default_system_prompt
            token_limit = model.get("token_limit") or settings.budget.default_token_limit
            budget = self._budgeter.trim_to_budget(
                system_prompt, request.context_files, request.messages, token_limit
            )
        except Exception:
            # Rejected before dispatch: the reservation must not count against the window
            if reserved:
                try:
                    await self._rate_limiter.release(caller.identifier, reserved, config)
                except Exception:
                    logger.exception("Failed to release reservation", identifier=caller.identifier)
            raise
        if budget.dropped:
            logger.info(
                "Trimmed conversation to fit context",
                model_id=model["model_id"],
                dropped=budget.dropped,
                truncated=budget.truncated,
            )

        return PreparedCompletion(
            caller=caller,
            rate_config=config,
            model=model,
            messages=budget.messages_to_send,
            system_prompt=system_prompt,
            temperature=(
                request.temperature if request.temperature is not None
                else model.get("temperature")
            ),
            top_p=request.top_p if request.top_p is not None else model.get("top_p"),
            prompt_tokens=budget.used_tokens,
            reserved_tokens=reserved,
            state=DispatchState.BUDGETING,
        )

    async def stream(self, prepared: PreparedCompletion) -> AsyncGenerator[str, None]:
        """Yield SSE frames for an admitted request, ending with ``[DONE]``."""
        if prepared.model_id == IMAGE_MODEL_ID:
            prepared.state = DispatchState.IMAGE_INTENT_ROUTING
            try:
                envelope = await self.detect_image_intent(prepared.messages)
            except UpstreamError as e:
                prepared.state = DispatchState.UPSTREAM_ERROR
                yield sse_frame({"error": {"code": e.code, "message": e.message}})
                yield DONE_FRAME
                return
            if envelope is not None:
                prepared.completion_text.append(envelope)
                prepared.state = DispatchState.DONE
                yield content_frame(envelope, IMAGE_MODEL_ID)
                yield DONE_FRAME
                return
            prepared.model = {
                **prepared.model,
                "api_id": settings.llm.image_fallback_model,
            }

        prepared.state = DispatchState.STREAMING
        async for frame in self._relay(prepared):
            yield frame

    async def _relay(self, prepared: PreparedCompletion) -> AsyncGenerator[str, None]:
        messages = [{"role": "system", "content": prepared.system_prompt}] + [
            {"role": m.role, "content": m.content} for m in prepared.messages
        ]
        params: dict[str, Any] = {
            "model": prepared.upstream_model,
            "messages": messages,
            "stream": True,
        }
        if prepared.temperature is not None:
            params["temperature"] = prepared.temperature
        if prepared.top_p is not None:
            params["top_p"] = prepared.top_p

        splicer = ReasoningSplicer()
        try:
            async with self._client.chat.completions.with_streaming_response.create(
                **params
            ) as response:
                async for line in response.iter_lines():
                    frame = self._translate_line(line, splicer, prepared)
                    if frame is None:
                        continue
                    if frame == DONE_FRAME:
                        break
                    yield frame
        except openai.APIError as e:
            prepared.state = DispatchState.UPSTREAM_ERROR
            message = friendly_upstream_message(getattr(e, "message", None) or str(e))
            logger.warning(
                "Upstream completion failed", model=prepared.upstream_model, error=str(e)
            )
            yield sse_frame({"error": {"code": "UPSTREAM_ERROR", "message": message}})
            yield DONE_FRAME
            return

        tail = splicer.finish()
        if tail:
            prepared.completion_text.append(tail)
            yield content_frame(tail)
        prepared.state = DispatchState.DONE
        yield DONE_FRAME

    @staticmethod
    def _translate_line(
        line: str, splicer: ReasoningSplicer, prepared: PreparedCompletion
    ) -> str | None:
        """Rewrite one upstream SSE line; None means nothing to forward."""
        if not line.strip():
            return None
        if not line.startswith("data:"):
            return f"{line}\n\n"
        data = line[5:].strip()
        if data == "[DONE]":
            return DONE_FRAME
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            return f"{line}\n\n"
        if not isinstance(chunk, dict):
            return f"{line}\n\n"

        usage = chunk.get("usage")
        if isinstance(usage, dict) and usage.get("total_tokens"):
            prepared.upstream_total_tokens = int(usage["total_tokens"])

        choices = chunk.get("choices") or []
        if not choices:
            return None if usage else f"{line}\n\n"
        delta = choices[0].get("delta") or {}
        reasoning_content = delta.pop("reasoning_content", None)
        reasoning = reasoning_content or delta.pop("reasoning", None)
        text = splicer.feed(reasoning, delta.get("content"))
        if text:
            delta["content"] = text
            prepared.completion_text.append(text)
        elif reasoning and "content" not in delta:
            return None
        choices[0]["delta"] = delta
        return sse_frame(chunk)

    async def detect_image_intent(self, messages: list[ChatMessageIn]) -> str | None:
        """Return an image-job envelope if the latest turns ask for an image."""
        if self._intent_llm is None:
            return None
        history: list[BaseMessage] = [SystemMessage(content=INTENT_SYSTEM_PROMPT)]
        for message in messages[-INTENT_WINDOW:]:
            if message.role == "assistant":
                history.append(AIMessage(content=message.content))
            elif message.role == "user":
                history.append(HumanMessage(content=message.content))
        try:
            result = await self._intent_llm.bind_tools([GENERATE_IMAGE_TOOL]).ainvoke(history)
        except Exception as e:
            logger.exception("Image intent classification failed")
            raise UpstreamError("Error generating image") from e

        for call in getattr(result, "tool_calls", None) or []:
            if call.get("name") != "generateImage":
                continue
            args = call.get("args") or {}
            job_id = str(uuid.uuid4())
            logger.info("Image generation requested", job_id=job_id)
            return image_generation_envelope(
                job_id, str(args.get("prompt", "")), str(args.get("negative", ""))
            )
        return None

    def consumed_tokens(self, prepared: PreparedCompletion) -> int:
        """Actual cost: provider-reported usage, else prompt plus counted output."""
        if prepared.upstream_total_tokens is not None:
            return prepared.upstream_total_tokens
        return prepared.prompt_tokens + self._budgeter.count("".join(prepared.completion_text))

    async def finalize_usage(
        self,
        prepared: PreparedCompletion,
        store: KeyValueStore,
        conversation_tokens: int | None = None,
    ) -> None:
        """Record the finished request's cost; failed upstream calls are not charged."""
        if prepared.state == DispatchState.UPSTREAM_ERROR:
            if prepared.reserved_tokens:
                # Zero actual cost refunds the whole reservation
                await record_usage_task(
                    store,
                    prepared.caller.identifier,
                    0,
                    prepared.model_id,
                    prepared.rate_config,
                    reserved=prepared.reserved_tokens,
                )
            return
        prepared.state = DispatchState.USAGE_RECORDING
        await record_usage_task(
            store,
            prepared.caller.identifier,
            self.consumed_tokens(prepared),
            prepared.model_id,
            prepared.rate_config,
            reserved=prepared.reserved_tokens,
            conversation_tokens=(
                conversation_tokens if conversation_tokens is not None
                else prepared.prompt_tokens
            ),
        )
        prepared.state = DispatchState.DONE


async def record_usage_task(
    store: KeyValueStore,
    identifier: str,
    tokens: int,
    model_id: str,
    config: RateLimitConfig,
    reserved: int = 0,
    conversation_tokens: int | None = None,
) -> None:
    """Debit a finished completion in an independent DB session.

    Runs as a FastAPI BackgroundTask after the stream closes; failures are
    logged and never reach the caller.
    """
    try:
        async with async_session_factory() as session:
            catalog = ModelCatalog(ModelRepository(session))
            limiter = RateLimitService(store, multiplier_lookup=catalog.token_multiplier)
            await limiter.record_usage(identifier, tokens, model_id, config, reserved=reserved)
            if conversation_tokens is not None:
                await limiter.store_conversation_tokens(identifier, conversation_tokens, config)
    except Exception:
        logger.exception("Failed to record token usage", identifier=identifier, model_id=model_id)
