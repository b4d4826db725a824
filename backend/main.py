"""
NutriLog Backend - FastAPI Application
Main entry point for the nutrition logging assistant API
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from typing import Optional

from config import CORS_ORIGINS
from nutrilog.models import TurnRequest
from nutrilog.orchestrator import create_orchestrator
from nutrilog.spoonacular import spoonacular_api

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log startup, then let background execution logs finish on shutdown"""
    logger.info(f"NutriLog Backend started (Spoonacular {'on' if spoonacular_api.enabled else 'off'})")
    yield
    await orchestrator.drain()


# Initialize FastAPI app
app = FastAPI(
    title="NutriLog API",
    description="AI Nutrition Logging Assistant Backend",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS + ["*"],  # Allow all in development
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

orchestrator = create_orchestrator()


# Request/Response Models
class ChatRequest(BaseModel):
    user_id: str
    message: str
    session_id: str = "default"
    chat_history: list[dict] = []
    timezone: str = "UTC"


class ChatResponse(BaseModel):
    status: str
    message: str
    response_type: str
    data: Optional[dict] = None
    steps: list[str] = []


class HealthResponse(BaseModel):
    status: str
    spoonacular: bool


def to_turn_request(request: ChatRequest) -> TurnRequest:
    if not request.user_id.strip():
        raise HTTPException(status_code=400, detail="user_id is required")
    return TurnRequest(
        user_id=request.user_id,
        message=request.message,
        session_id=request.session_id,
        chat_history=request.chat_history,
        timezone=request.timezone,
    )


# API Endpoints
@app.get("/")
async def root():
    """Root endpoint"""
    return {"message": "NutriLog API is running", "version": "1.0.0"}


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint"""
    return HealthResponse(status="healthy", spoonacular=spoonacular_api.enabled)


@app.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest):
    """Run one conversation turn and return the assembled response"""
    result = await orchestrator.process_turn(to_turn_request(request))
    return ChatResponse(**result.to_dict())


@app.post("/chat/stream")
async def chat_stream(request: ChatRequest):
    """
    Same turn as /chat, streamed as server-sent events.
    Each progress step is sent as it happens, then the final response.
    """
    turn = to_turn_request(request)
    queue: asyncio.Queue = asyncio.Queue()

    async def run_turn():
        try:
            result = await orchestrator.process_turn(turn, on_step=lambda step: queue.put_nowait({"step": step}))
            await queue.put({"response": result.to_dict()})
        finally:
            await queue.put(None)

    async def events():
        task = asyncio.create_task(run_turn())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield f"data: {json.dumps(item, default=str)}\n\n"
        finally:
            await task

    return StreamingResponse(events(), media_type="text/event-stream")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
