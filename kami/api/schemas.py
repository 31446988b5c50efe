from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ChatResponse(CamelModel):
    success: bool = True
    message: str
    user_id: str = Field(alias="userId")
    conversation_id: str = Field(alias="conversationId")
    history_length: int = Field(alias="historyLength")
    memory_updated: bool = Field(alias="memoryUpdated")
    memory_count: int = Field(alias="memoryCount")
    used_web_search: bool = Field(alias="usedWebSearch")
    command: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    intent: Optional[str] = None
    complexity: Optional[str] = None
    timestamp: str


class HistoryItem(CamelModel):
    id: int
    role: str
    content: str
    is_user: bool = Field(alias="isUser")


class HistoryResponse(CamelModel):
    success: bool = True
    history: List[HistoryItem] = []
    total: int = 0


class ProfileResponse(CamelModel):
    success: bool = True
    profile: Dict[str, str] = {}
    summary: str = ""
    profile_count: int = Field(default=0, alias="profileCount")


class ClearRequest(CamelModel):
    user_id: Optional[str] = Field(default=None, alias="userId")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")


class ClearResponse(CamelModel):
    success: bool = True
    message: str
    cleared: List[str] = []
    removed: int = 0
    storage: str
