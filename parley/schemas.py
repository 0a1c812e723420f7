from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


Role = Literal["user", "assistant", "system"]


class Message(BaseModel):
    role: Role
    content: str

    model_config = {"frozen": True}

    def to_wire(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


class SessionSnapshot(BaseModel):
    current_model: Optional[str] = None
    history_by_model: Dict[str, List[Message]] = Field(default_factory=dict)

    model_config = {"protected_namespaces": ()}


class ExchangeStats(BaseModel):
    tokens: int = 0
    elapsed_s: float = 0.0
    tokens_per_s: float = 0.0
    prompt_tokens: Optional[int] = None
    dropped_fragments: int = 0


class ExchangeResult(BaseModel):
    status: Literal["completed", "cancelled", "interrupted", "choice_required"]
    model: Optional[str] = None
    requested_model: Optional[str] = None
    content: str = ""
    stats: ExchangeStats = Field(default_factory=ExchangeStats)
    error: Optional[str] = None
    candidates: List[str] = Field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.status == "completed"


class SendRequest(BaseModel):
    prompt: str
    model: Optional[str] = None
    with_history: bool = True


class MultishotRequest(BaseModel):
    prompt: str
    models: List[str] = Field(min_length=1)


class TextSetting(BaseModel):
    value: Optional[str] = None


class ParameterUpdate(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict)


class CommandRequest(BaseModel):
    text: str = ""
