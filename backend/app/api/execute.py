from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.execution import ExecutionRunner
from app.schemas import ExecuteRequest, ExecuteResponse

router = APIRouter()


@router.post("/api/execute", response_model=ExecuteResponse)
async def execute_code(payload: ExecuteRequest, request: Request):
    if not payload.code:
        return JSONResponse(status_code=400, content={"output": "Error: No code provided"})
    runner: ExecutionRunner = request.app.state.execution_runner
    output = await runner.execute(payload.language, payload.code)
    return {"output": output}


@router.get("/api/execute/languages")
async def execution_languages(request: Request):
    runner: ExecutionRunner = request.app.state.execution_runner
    return {"languages": runner.languages}
