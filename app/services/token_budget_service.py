"""Token counting and context-window trimming."""

from dataclasses import dataclass
from functools import lru_cache

import tiktoken

from app.core.config import settings
from app.core.exceptions import ContextTooLargeError, MessageTooLargeError
from app.schemas.completion_schema import ChatMessageIn, ContextFile

MIN_TRUNCATION_TOKENS = 100
TRUNCATION_MARGIN_TOKENS = 50
TRUNCATION_NOTICE = "\n\n[Message truncated to fit the model's context window]"


@lru_cache
def get_encoding(name: str) -> tiktoken.Encoding:
    """Load and cache a tiktoken encoding."""
    return tiktoken.get_encoding(name)


def count_tokens(text: str, encoding_name: str | None = None) -> int:
    """Number of tokens in ``text`` under the configured encoding."""
    encoding = get_encoding(encoding_name or settings.budget.encoding_name)
    return len(encoding.encode(text, disallowed_special=()))


def context_file_message(file: ContextFile) -> ChatMessageIn:
    """Render a context file as a synthetic user message."""
    return ChatMessageIn(
        role="user",
        content=f"This is the content of the file {file.name}: {file.content}",
    )


@dataclass(frozen=True)
class BudgetResult:
    """Messages that fit the window and the tokens they consume."""

    messages_to_send: list[ChatMessageIn]
    used_tokens: int
    truncated: bool = False
    dropped: int = 0


class TokenBudgeter:
    """Fits a conversation into a model's context window.

    Budget order is system prompt, then context files (fail fast), then
    messages from newest to oldest. ``reserve`` tokens are always kept free
    for the model's response.
    """

    def __init__(
        self,
        reserve: int | None = None,
        chars_per_token: float | None = None,
        encoding_name: str | None = None,
    ) -> None:
        self.reserve = settings.budget.reserve_tokens if reserve is None else reserve
        self.chars_per_token = chars_per_token or settings.budget.chars_per_token
        self.encoding_name = encoding_name or settings.budget.encoding_name

    def count(self, text: str) -> int:
        return count_tokens(text, self.encoding_name)

    def trim_to_budget(
        self,
        system_prompt: str | None,
        context_files: list[ContextFile],
        messages: list[ChatMessageIn],
        token_limit: int,
    ) -> BudgetResult:
        """Select the newest messages that fit under ``token_limit``.

        Raises ContextTooLargeError when the context files do not fit and
        MessageTooLargeError when not even a truncated latest message does.
        """
        prompt = system_prompt if system_prompt and system_prompt.strip() else (
            settings.llm.default_system_prompt
        )
        running = self.count(prompt)

        for file in context_files:
            file_tokens = self.count(file.content)
            if running + file_tokens + self.reserve > token_limit:
                raise ContextTooLargeError
            running += file_tokens

        accepted: list[ChatMessageIn] = []
        truncated = False
        for message in reversed(messages):
            msg_tokens = self.count(message.content)
            if running + msg_tokens + self.reserve <= token_limit:
                accepted.append(message)
                running += msg_tokens
                continue
            if accepted:
                break
            available = token_limit - running - self.reserve
            if available <= MIN_TRUNCATION_TOKENS:
                raise MessageTooLargeError
            max_chars = int((available - TRUNCATION_MARGIN_TOKENS) * self.chars_per_token)
            content = message.content[:max_chars] + TRUNCATION_NOTICE
            accepted.append(message.model_copy(update={"content": content}))
            running += self.count(content)
            truncated = True
            break

        accepted.reverse()
        file_messages = [context_file_message(f) for f in context_files]
        return BudgetResult(
            messages_to_send=file_messages + accepted,
            used_tokens=running,
            truncated=truncated,
            dropped=len(messages) - len(accepted),
        )
