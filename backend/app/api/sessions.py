from fastapi import APIRouter, HTTPException, Request

from app.schemas import (
    CreateInterviewRequest,
    CreateInterviewResponse,
    InterviewSnapshot,
    SessionDetails,
    SessionListResponse,
)
from app.session.lifecycle import SessionLifecycleController, SessionNotFoundError

router = APIRouter()


def _lifecycle(request: Request) -> SessionLifecycleController:
    return request.app.state.lifecycle


@router.post("/api/interviews", response_model=CreateInterviewResponse)
async def create_interview(payload: CreateInterviewRequest, request: Request):
    return await _lifecycle(request).create_room(payload.candidate_name, payload.language)


@router.get("/api/interviews/{room_id}", response_model=InterviewSnapshot)
async def get_interview(room_id: str, request: Request):
    try:
        return await _lifecycle(request).fetch(room_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Room not found")


@router.get("/api/sessions", response_model=SessionListResponse)
async def list_sessions(request: Request, limit: int = 20):
    capped = max(1, min(int(limit or 20), 200))
    return {"sessions": await _lifecycle(request).list_recent(capped)}


@router.get("/api/sessions/{session_id}/details", response_model=SessionDetails)
async def get_session_details(session_id: str, request: Request):
    try:
        return await _lifecycle(request).details(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")


@router.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str, request: Request):
    try:
        await _lifecycle(request).delete(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"message": "Session deleted successfully"}
