"""FastAPI backend for SMADR with streamed pipeline progress."""

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse, Response
from pydantic import BaseModel
from typing import List, Dict, Any, Optional
from contextlib import asynccontextmanager
import asyncio
import json
import time
import logging
import uuid

from . import storage
from .config import CORS_ORIGINS, DEFAULT_MODEL_NAME, TITLE_MAX_CHARS
from .errors import PipelineError, PipelineBusyError, TransportError, UNKNOWN_ERROR_MESSAGE
from .logging_config import setup_logging
from .pipeline import Pipeline
from .providers import Provider, ProviderConfig, Turn, ROLE_ASSISTANT
from .settings import ApiSettings, ProviderKeys, load_settings, save_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    yield


app = FastAPI(title="SMADR API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One single-flight pipeline per conversation
_pipelines: Dict[str, Pipeline] = {}


def get_pipeline(conversation_id: str) -> Pipeline:
    pipeline = _pipelines.get(conversation_id)
    if pipeline is None:
        pipeline = Pipeline()
        _pipelines[conversation_id] = pipeline
    return pipeline


def _drop_idle_pipeline(conversation_id: str, pipeline: Pipeline):
    if not pipeline.is_running and _pipelines.get(conversation_id) is pipeline:
        del _pipelines[conversation_id]


# Strong references to running stream tasks; the event loop only keeps weak ones
_background_tasks = set()


class CreateConversationRequest(BaseModel):
    pass


class SendMessageRequest(BaseModel):
    content: str


class SettingsUpdate(BaseModel):
    provider: Optional[Provider] = None
    model: Optional[str] = None
    keys: Optional[Dict[str, str]] = None


class ConversationMetadata(BaseModel):
    id: str
    created_at: str
    title: str
    message_count: int


class Conversation(BaseModel):
    id: str
    created_at: str
    title: str
    messages: List[Dict[str, Any]]


TERMINAL_EVENTS = {"complete", "error"}


def _sse(event_type: str, data: Optional[Dict[str, Any]] = None) -> str:
    payload: Dict[str, Any] = {"type": event_type}
    if data is not None:
        payload["data"] = data
    return f"data: {json.dumps(payload)}\n\n"


class StreamSink:
    """Pushes pipeline events onto a queue and stores the terminal reply."""

    def __init__(self, conversation_id: str, provider_config: ProviderConfig):
        self.conversation_id = conversation_id
        self.provider_config = provider_config
        self.queue: asyncio.Queue = asyncio.Queue()
        self.started = time.monotonic()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def _metadata(self, status: str) -> Dict[str, Any]:
        return {
            "status": status,
            "provider": self.provider_config.provider.value,
            "model": self.provider_config.model,
        }

    def on_progress(self, label: str) -> None:
        self.queue.put_nowait(("progress", {"label": label, "elapsed_ms": self.elapsed_ms()}))

    def on_complete(self, text: str) -> None:
        storage.add_assistant_message(self.conversation_id, text, self._metadata("complete"))
        self.queue.put_nowait(("complete", {"content": text}))

    def on_error(self, error: PipelineError) -> None:
        message = str(error) or "Sorry, I encountered an error. Please check your API keys and try again."
        if not isinstance(error, PipelineBusyError):
            storage.add_assistant_message(self.conversation_id, message, self._metadata("error"))
        self.queue.put_nowait(("error", {"message": message}))


@app.get("/")
async def root():
    return {"status": "ok", "service": "SMADR API"}


@app.get("/api/providers")
async def list_providers():
    settings = load_settings()
    return {
        "providers": [p.value for p in Provider],
        "default_model": DEFAULT_MODEL_NAME,
        "selected_provider": settings.provider.value,
        "configured": {p.value: bool(getattr(settings.keys, p.value)) for p in Provider},
    }


@app.get("/api/settings")
async def get_settings():
    return load_settings().masked()


@app.put("/api/settings")
async def update_settings(request: SettingsUpdate):
    current = load_settings()
    keys = current.keys.model_dump()
    for name, value in (request.keys or {}).items():
        if name not in keys:
            raise HTTPException(status_code=400, detail=f"Unknown provider key: {name}")
        if value:
            keys[name] = value

    updated = ApiSettings(
        provider=request.provider or current.provider,
        model=current.model if request.model is None else request.model,
        keys=ProviderKeys(**keys),
    )
    save_settings(updated)
    logger.info("Settings saved: provider=%s model=%s", updated.provider.value, updated.model)
    return updated.masked()


@app.get("/api/conversations", response_model=List[ConversationMetadata])
async def list_conversations():
    return storage.list_conversations()


@app.post("/api/conversations", response_model=Conversation)
async def create_conversation(request: CreateConversationRequest):
    conversation_id = str(uuid.uuid4())
    conversation = storage.create_conversation(conversation_id)
    return conversation


@app.get("/api/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(conversation_id: str):
    conversation = storage.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@app.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str):
    pipeline = _pipelines.get(conversation_id)
    if pipeline is not None and pipeline.is_running:
        raise HTTPException(status_code=409, detail="A request is still running for this conversation")
    try:
        storage.delete_conversation(conversation_id)
        _pipelines.pop(conversation_id, None)
        return {"status": "deleted"}
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.get("/api/conversations/{conversation_id}/messages/{index}/download")
async def download_message(conversation_id: str, index: int):
    """Download one assistant reply as a markdown file."""
    conversation = storage.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    messages = conversation["messages"]
    if index < 0 or index >= len(messages) or messages[index].get("role") != ROLE_ASSISTANT:
        raise HTTPException(status_code=404, detail="Assistant message not found")

    return Response(
        content=messages[index].get("content", ""),
        media_type="text/markdown; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="smadr-response.md"'},
    )


async def _run_pipeline(
    conversation_id: str,
    pipeline: Pipeline,
    history: List[Turn],
    query: str,
    provider_config: ProviderConfig,
    sink: StreamSink,
    cancel: asyncio.Event,
):
    try:
        await pipeline.submit(history, query, provider_config, sink, cancel=cancel, reserved=True)
    except Exception as e:
        logger.exception("Unexpected pipeline failure for %s", conversation_id)
        error = TransportError(str(e) or UNKNOWN_ERROR_MESSAGE)
        try:
            sink.on_error(error)
        except Exception:
            logger.exception("Could not store error reply for %s", conversation_id)
            sink.queue.put_nowait(("error", {"message": str(error)}))
    finally:
        _drop_idle_pipeline(conversation_id, pipeline)


@app.post("/api/conversations/{conversation_id}/message/stream")
async def send_message_stream(conversation_id: str, request: SendMessageRequest):
    """Run the pipeline for a message and stream progress as server-sent events."""
    conversation = storage.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if not request.content.strip():
        raise HTTPException(status_code=400, detail="Message is empty")

    # Claimed before anything is stored so a concurrent submit gets 409
    pipeline = get_pipeline(conversation_id)
    try:
        pipeline.reserve()
    except PipelineBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))

    try:
        # Captured now; later settings edits do not affect this request
        provider_config = load_settings().provider_config()
        history = storage.conversation_history(conversation)
        storage.add_user_message(conversation_id, request.content)
        if not conversation["messages"]:
            storage.update_conversation_title(conversation_id, request.content.strip()[:TITLE_MAX_CHARS])
    except Exception:
        pipeline.release()
        _drop_idle_pipeline(conversation_id, pipeline)
        raise

    sink = StreamSink(conversation_id, provider_config)
    cancel = asyncio.Event()
    task = asyncio.create_task(_run_pipeline(
        conversation_id, pipeline, history, request.content, provider_config, sink, cancel
    ))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    async def event_generator():
        try:
            yield _sse("pipeline_start", {
                "provider": provider_config.provider.value,
                "model": provider_config.model,
            })
            while True:
                event_type, data = await sink.queue.get()
                yield _sse(event_type, data)
                if event_type in TERMINAL_EVENTS:
                    break
            await task
        finally:
            if not task.done():
                logger.info("Client disconnected; cancelling request for %s", conversation_id)
                cancel.set()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("smadr.main:app", host="0.0.0.0", port=8001, reload=True)
