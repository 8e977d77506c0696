from pydantic import BaseModel


class ProcessDueResponse(BaseModel):
    success: bool
    notified: int
