from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ActivateRequest(BaseModel):
    key: str


class ParseRequest(BaseModel):
    raw_text: str


class AnalyzeRequest(BaseModel):
    trades: List[Dict[str, Any]] = Field(min_length=1)
    analysis_type: Literal["single", "daily", "weekly"] = "single"


class CreateDatabaseRequest(BaseModel):
    parent_page_id: str
    title: str = "Trade Journal"


class SyncRequest(BaseModel):
    trades: List[Dict[str, Any]]
    database_id: Optional[str] = None


class SaveAnalysisRequest(BaseModel):
    analysis: Dict[str, Any]
    analysis_type: str = "single"
    database_id: Optional[str] = None


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0


class Meta(BaseModel):
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class ParseResponse(BaseModel):
    trades: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None
    message: Optional[str] = None
    meta: Meta = Field(default_factory=Meta)


class AnalyzeResponse(BaseModel):
    analysis: Dict[str, Any]
    meta: Meta = Field(default_factory=Meta)


class LicenseInfo(BaseModel):
    key: str
    status: str
    activated_at: Optional[datetime] = None
    has_notion: bool = False
    notion_workspace_id: Optional[str] = None
    notion_database_id: Optional[str] = None


class SyncedItem(BaseModel):
    index: int
    page_id: str


class FailedItem(BaseModel):
    index: int
    reason: str
    status_code: Optional[int] = None


class InvalidItem(BaseModel):
    index: int
    errors: List[str]


class SyncResponse(BaseModel):
    synced_count: int
    succeeded: List[SyncedItem] = Field(default_factory=list)
    failed: List[FailedItem] = Field(default_factory=list)
    invalid: List[InvalidItem] = Field(default_factory=list)
