"""At-rest encryption configuration."""

from pydantic import BaseModel, SecretStr


class EncryptionConfig(BaseModel, frozen=True):
    """Per-user content encryption settings."""

    secret: SecretStr
    pbkdf2_iterations: int
