from pydantic import BaseModel, Field


class CreateInterviewRequest(BaseModel):
    candidate_name: str = Field(default="", max_length=200)
    language: str | None = None


class CreateInterviewResponse(BaseModel):
    id: str
    url: str


class InterviewSnapshot(BaseModel):
    id: str
    candidate_name: str
    language: str
    code: str
    participant_count: int
    is_active: bool
    created_at: float | None = None
    ended_at: float | None = None


class SessionSummary(BaseModel):
    id: str
    candidate_name: str
    language: str
    is_active: bool
    created_at: float
    ended_at: float | None = None
    participant_count: int


class SessionListResponse(BaseModel):
    sessions: list[SessionSummary]


class CodeSnapshot(BaseModel):
    timestamp: float
    code: str


class SessionDetails(BaseModel):
    id: str
    candidate_name: str
    language: str
    code: str
    is_active: bool
    created_at: float
    updated_at: float
    ended_at: float | None = None
    participants: list[str]
    code_history: list[CodeSnapshot]


class ExecuteRequest(BaseModel):
    language: str = ""
    code: str = ""


class ExecuteResponse(BaseModel):
    output: str
