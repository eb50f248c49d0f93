"""Server configuration."""

from pydantic import BaseModel


class ServerConfig(BaseModel, frozen=True):
    """Uvicorn bind settings."""

    host: str
    port: int
    proxy_headers: bool = True
