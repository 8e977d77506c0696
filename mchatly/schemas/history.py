from datetime import datetime
from typing import List

from pydantic import BaseModel


class HistoryItem(BaseModel):
    id: int
    role: str
    content: str
    type: str
    created_at: datetime


class HistoryResponse(BaseModel):
    session_id: str
    count: int
    messages: List[HistoryItem]
