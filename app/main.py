"""
FLUENT COACH MAIN API
=====================

This module defines the FastAPI application and all HTTP endpoints. It is
designed for single-user use: one person runs one server (python run.py) and
points their app or the terminal client (python client.py) at it.

ENDPOINTS:
  GET    /                        - API name and list of endpoints.
  GET    /health                  - Service status, provider, model and masked API key.
  GET    /roles                   - Available coach roles.
  POST   /chat                    - Send a message, wait for the whole reply.
  POST   /chat/stream             - Send a message, receive the reply as Server-Sent Events.
  POST   /chat/{id}/cancel        - Stop the reply in progress.
  POST   /chat/{id}/role          - Switch coach role (starts a fresh conversation).
  GET    /chat/history/{id}       - Messages of a session.
  DELETE /chat/history/{id}       - Clear a session's conversation (keeps the role).
  GET    /scenarios               - Practice scenarios.
  POST   /scenarios               - Add a scenario.
  DELETE /scenarios/{title}       - Remove a scenario.
  GET    /settings/provider       - Active provider, model, masked key; providers to choose from.
  PUT    /settings/provider       - Switch provider (and optionally key / model) for all sessions.

SESSION:
  If you omit session_id on /chat or /chat/stream, the server generates a UUID
  and returns it (in the body for /chat, in the X-Session-Id header for
  /chat/stream). Send it back to continue the conversation. Sessions live in
  memory until the server stops.

STARTUP:
  The lifespan function builds the completion client from .env settings and
  the chat service around it.
"""


from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from contextlib import asynccontextmanager
import uvicorn
import logging

from app.models import ChatRequest, ChatResponse, ProviderRequest, RoleRequest, ScenarioRequest
from app.services.chat_service import ChatService, SessionBusyError
from app.services.coach_profiles import DEFAULT_PROFILE, list_profiles
from app.services.completion_client import CompletionClient
from app.services.scenarios import ScenarioBook
from app.utils.text_utils import mask_api_key
from config import (
    COACH_API_KEY,
    COACH_HOST,
    COACH_MODEL,
    COACH_PORT,
    COACH_PROVIDER,
    COACH_RELOAD,
    COACH_STREAMING,
    PROVIDERS,
)


# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("FluentCoach")


# -----------------------------------------------------------------------------
# GLOBAL SERVICE REFERENCES
# -----------------------------------------------------------------------------
# Set during startup (lifespan) and used by all route handlers.
chat_service: ChatService = None
scenario_book: ScenarioBook = None


# -------------------------------------------------------------------------
# LIFESPAN (STARTUP / SHUTDOWN)
# -------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create the completion client (provider from .env), the chat
    service and the scenario book. Shutdown: cancel any reply still streaming
    so no provider connection is left open.
    """
    global chat_service, scenario_book

    logger.info("=" * 60)
    logger.info("Fluent Coach - Starting Up...")
    logger.info("=" * 60)

    try:
        client = CompletionClient.from_config()
        chat_service = ChatService(client, streaming=COACH_STREAMING, provider=COACH_PROVIDER)
        scenario_book = ScenarioBook()

        logger.info("Provider: %s (%s)", PROVIDERS[COACH_PROVIDER]["label"], COACH_MODEL)
        logger.info("API key: %s", mask_api_key(COACH_API_KEY))
        logger.info("Default role: %s", DEFAULT_PROFILE.display_name)
        logger.info("Fluent Coach is online. Docs: http://localhost:8000/docs")
        logger.info("=" * 60)

        yield

        logger.info("Shutting down Fluent Coach...")
        if chat_service:
            for session in list(chat_service.sessions.values()):
                session.cancel()
        logger.info("Goodbye!")

    except Exception as e:
        logger.error(f"Fatal error during startup: {e}", exc_info=True)
        raise


# -------------------------------------------------------------------------
# FASTAPI APP AND CORS
# -------------------------------------------------------------------------
app = FastAPI(
    title="Fluent Coach API",
    description="English speaking coach backed by an OpenAI-compatible LLM",
    lifespan=lifespan
)

# Allow any origin so a frontend on another port or device can call this API without CORS errors.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _require_chat_service() -> ChatService:
    if not chat_service:
        raise HTTPException(status_code=503, detail="Chat service not initialized")
    return chat_service


def _require_scenario_book() -> ScenarioBook:
    if not scenario_book:
        raise HTTPException(status_code=503, detail="Scenario book not initialized")
    return scenario_book


# =========================================================================
# API ENDPOINTS
# =========================================================================

@app.get("/")
async def root():
    """Return the API name and a short description of each endpoint (for discovery)."""
    return {
        "message": "Fluent Coach API",
        "endpoints": {
            "/chat": "Send a message and wait for the full reply",
            "/chat/stream": "Send a message and stream the reply (SSE)",
            "/chat/{session_id}/cancel": "Stop the reply in progress",
            "/chat/{session_id}/role": "Switch coach role",
            "/chat/history/{session_id}": "Get or clear chat history",
            "/roles": "Available coach roles",
            "/scenarios": "Practice scenarios",
            "/settings/provider": "Get or switch the LLM provider",
            "/health": "System health check"
        }
    }


@app.get("/health")
async def health():
    """Return 'healthy' plus provider details; the API key is masked."""
    return {
        "status": "healthy",
        "chat_service": chat_service is not None,
        "provider": chat_service.provider if chat_service else COACH_PROVIDER,
        "model": chat_service.client.model if chat_service else COACH_MODEL,
        "api_key": mask_api_key(chat_service.client.api_key if chat_service else COACH_API_KEY),
        "streaming": COACH_STREAMING,
    }


@app.get("/roles")
async def roles():
    return {
        "default": DEFAULT_PROFILE.id,
        "roles": [
            {"id": p.id, "display_name": p.display_name, "system_prompt": p.system_prompt}
            for p in list_profiles()
        ],
    }


@app.post("/chat", response_model=ChatResponse)
def chat(request: ChatRequest):
    """
    Send a message and wait for the coach's complete reply.

    Declared as a plain `def` so FastAPI runs it in the threadpool: the turn
    blocks on the provider and must not hold up the event loop.

    If the provider fails, the response is still 200 with errored=true and a
    readable summary in `response`, exactly what the user would see in the chat.
    If the turn is cancelled meanwhile (cancel, role change or clear from another
    request), the response is 200 with cancelled=true and an empty `response`.
    """
    service = _require_chat_service()
    try:
        session_id = service.get_or_create_session(request.session_id)
        result = service.process_message(session_id, request.message)
        return ChatResponse(
            response=result.text,
            session_id=session_id,
            errored=result.errored,
            cancelled=result.cancelled,
        )
    except ValueError as e:
        logger.warning(f"Rejected chat request: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Error processing chat: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error processing chat: {str(e)}")


@app.post("/chat/stream")
def chat_stream(request: ChatRequest):
    """
    Send a message and stream the reply as Server-Sent Events.

    Each event is an OpenAI-style chunk: data: {"choices":[{"delta":{"content":"..."}}]}.
    The stream ends with data: [DONE]. A failed turn sends the error summary as
    content; a cancelled turn just ends. The session id is in X-Session-Id.
    """
    service = _require_chat_service()
    try:
        session_id = service.get_or_create_session(request.session_id)
        events = service.stream_message(session_id, request.message)
    except ValueError as e:
        logger.warning(f"Rejected stream request: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Error starting stream: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error starting stream: {str(e)}")

    return StreamingResponse(
        events,
        media_type="text/event-stream",
        headers={"X-Session-Id": session_id, "Cache-Control": "no-cache"},
    )


@app.post("/chat/{session_id}/cancel")
async def cancel_chat(session_id: str):
    """Stop the reply in progress. Calling it when nothing is running is harmless."""
    service = _require_chat_service()
    try:
        cancelled = service.cancel(session_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e.args[0]))
    return {"session_id": session_id, "cancelled": cancelled}


@app.post("/chat/{session_id}/role")
async def change_role(session_id: str, request: RoleRequest):
    """Switch the coach role. Creates the session if needed; always starts a fresh conversation."""
    service = _require_chat_service()
    try:
        session_id = service.get_or_create_session(session_id)
        service.change_role(session_id, request.role)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"session_id": session_id, "role": request.role}


@app.get("/chat/history/{session_id}")
async def get_chat_history(session_id: str):
    """
    Messages of a session in chronological order, as the user sees them
    (failed turns show their error message). Unknown sessions return [].
    """
    service = _require_chat_service()
    try:
        messages = service.get_chat_history(session_id)
        session = service.sessions.get(session_id)
        return {
            "session_id": session_id,
            "role": session.profile.id if session else DEFAULT_PROFILE.id,
            "status": session.status.value if session else "idle",
            "messages": [{"role": msg.role, "content": msg.content} for msg in messages]
        }
    except Exception as e:
        logger.error(f"Error retrieving history: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error retrieving history: {str(e)}")


@app.delete("/chat/history/{session_id}")
async def clear_chat_history(session_id: str):
    """Clear a conversation, keeping its coach role. A reply in progress is cancelled."""
    service = _require_chat_service()
    try:
        service.clear_history(session_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e.args[0]))
    return {"session_id": session_id, "cleared": True}


@app.get("/scenarios")
async def get_scenarios():
    book = _require_scenario_book()
    return {
        "scenarios": [
            {"title": s.title, "prompt": s.prompt, "icon": s.icon} for s in book.list()
        ]
    }


@app.post("/scenarios")
async def add_scenario(request: ScenarioRequest):
    book = _require_scenario_book()
    try:
        scenario = book.add(request.title, request.prompt, request.icon)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"title": scenario.title, "prompt": scenario.prompt, "icon": scenario.icon}


@app.delete("/scenarios/{title}")
async def delete_scenario(title: str):
    book = _require_scenario_book()
    if not book.remove(title):
        raise HTTPException(status_code=404, detail=f"No scenario named {title!r}")
    return {"title": title, "deleted": True}


@app.get("/settings/provider")
async def get_provider():
    """Active provider, model and masked API key, plus every provider that can be selected."""
    service = _require_chat_service()
    return service.get_provider_settings()


@app.put("/settings/provider")
def set_provider(request: ProviderRequest):
    """
    Switch the LLM provider for every session. An api_key sent here is kept
    in memory for that provider only (until the server stops); without one the
    provider's key from .env is used. The next turn of each session goes to the
    new provider.
    """
    service = _require_chat_service()
    try:
        return service.set_provider(request.provider, api_key=request.api_key, model=request.model)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


# -------------------------------------------------------------------------
# STANDALONE RUN (python -m app.main)
# -------------------------------------------------------------------------
def run():
    """Start the uvicorn server (same as run.py); used if someone does python -m app.main"""
    uvicorn.run(
        "app.main:app",
        host=COACH_HOST,
        port=COACH_PORT,
        reload=COACH_RELOAD,
        log_level="info"
    )

if __name__ == "__main__":
    run()
