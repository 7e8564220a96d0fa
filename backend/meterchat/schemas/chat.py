from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatHistoryMessage(BaseModel):
    role: str
    content: Optional[str] = None


class ChatRequest(BaseModel):
    # Wire names follow the web client (camelCase)
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    use_web_search: bool = Field(default=False, alias="useWebSearch")
    use_code_generation: bool = Field(default=False, alias="useCodeGeneration")
    history: List[ChatHistoryMessage] = Field(default_factory=list)
    session_id: Optional[str] = Field(default=None, alias="sessionId")
