import asyncio
import json
import os

import httpx
import websockets

BASE_HTTP = os.getenv("SMOKE_BASE_HTTP", "http://127.0.0.1:8000")
BASE_WS = os.getenv("SMOKE_BASE_WS", "ws://127.0.0.1:8000")


async def _read_until(ws, wanted: set[str], timeout_sec: float = 5.0):
    end_at = asyncio.get_running_loop().time() + timeout_sec
    seen: list[str] = []
    while asyncio.get_running_loop().time() < end_at:
        remaining = max(0.1, end_at - asyncio.get_running_loop().time())
        try:
            msg = await asyncio.wait_for(ws.recv(), timeout=remaining)
        except asyncio.TimeoutError:
            break
        data = json.loads(msg)
        event_type = str(data.get("type") or "")
        seen.append(event_type)
        if event_type in wanted:
            return data, seen
    return None, seen


async def run() -> None:
    async with httpx.AsyncClient(base_url=BASE_HTTP, timeout=10.0) as client:
        created = (await client.post("/api/interviews", json={"candidate_name": "Smoke", "language": "cpp"})).json()
    room_id = created["id"]

    async with websockets.connect(f"{BASE_WS}/ws/room") as interviewer, websockets.connect(f"{BASE_WS}/ws/room") as candidate:
        await interviewer.send(json.dumps({"type": "join", "room_id": room_id, "user_name": "Interviewer"}))
        await _read_until(interviewer, {"room-state"})
        await candidate.send(json.dumps({"type": "join", "room_id": room_id, "user_name": "Candidate"}))
        await _read_until(candidate, {"room-state"})

        code = '#include <iostream>\nint main(){std::cout<<"hi";}'
        await candidate.send(json.dumps({"type": "code-change", "room_id": room_id, "code": code}))
        update, seen = await _read_until(interviewer, {"code-update"})
        if not update or update.get("code") != code:
            raise RuntimeError(f"Did not receive code-update. Seen={seen}")

    async with httpx.AsyncClient(base_url=BASE_HTTP, timeout=30.0) as client:
        result = (await client.post("/api/execute", json={"language": "cpp", "code": code})).json()

    print("ROOM_SYNC_OK", room_id)
    print("EXECUTE_OUTPUT", result.get("output"))


if __name__ == "__main__":
    asyncio.run(run())
