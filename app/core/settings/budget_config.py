"""Context-window budgeting configuration."""

from pydantic import BaseModel


class BudgetConfig(BaseModel, frozen=True):
    """Token budget settings used before every model call."""

    reserve_tokens: int
    chars_per_token: float
    default_token_limit: int
    encoding_name: str
