from pydantic import BaseModel


class ErrorBody(BaseModel):
    error: str


class HealthResponse(BaseModel):
    status: str
    mode: str
    uptime: float


class ReadyResponse(BaseModel):
    ready: bool
    state: str
