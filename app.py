from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import HTMLResponse

from localchat.config import ENV_FILE, MODEL_ID_DEFAULT, PORT, PRELOAD_MODEL
from localchat.conversation import Conversation
from localchat.engine import (
    active_load_job,
    available_models,
    current_engine,
    load_job_snapshot,
    runtime_state,
    select_model,
)
from localchat.formatter import format_message
from localchat.schemas import (
    ChatRequest,
    ConversationResponse,
    FormatRequest,
    FormatResponse,
    MessageView,
    ModelSelectRequest,
)
from localchat.ui import render_ui_html

conversation = Conversation()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if PRELOAD_MODEL:
        job_id = select_model(MODEL_ID_DEFAULT)
        print(f"Preloading {MODEL_ID_DEFAULT} (load job {job_id})")
    yield


app = FastAPI(title="LocalChat", version="1.0.0", lifespan=lifespan)


def _conversation_payload(sent: Optional[bool] = None) -> ConversationResponse:
    return ConversationResponse(
        messages=[
            MessageView(role=message.role, content=message.content, html=format_message(message.content))
            for message in conversation.visible_messages()
        ],
        is_typing=conversation.is_typing,
        sent=sent,
    )


@app.get("/", response_class=HTMLResponse)
def ui():
    state = {
        **runtime_state(),
        "available_models": available_models(),
        **_conversation_payload().model_dump(exclude={"sent"}),
    }
    return HTMLResponse(
        render_ui_html(state),
        headers={
            "Cache-Control": "no-store, no-cache, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
        },
    )


@app.get("/health")
def health():
    return {"status": "ok", **runtime_state()}


@app.get("/models")
def list_models():
    state = runtime_state()
    return {
        "models": available_models(),
        "active_model": state["model_id"],
        "model_loaded": state["model_loaded"],
        "load_status": state["load_status"],
    }


@app.post("/models/select")
def choose_model(request: ModelSelectRequest):
    try:
        job_id = select_model(
            request.model_id,
            device=request.device,
            force_reload=request.force_reload,
            persist_env=request.persist_env,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    # A load already in progress is returned as is, whatever was asked for.
    job = load_job_snapshot(job_id) or {}
    return {
        "status": "loading",
        "job_id": job_id,
        "model_id": job.get("model_id", request.model_id),
        "persist_env": request.persist_env,
        "env_file": str(ENV_FILE),
    }


@app.get("/models/load/active")
def model_load_active():
    return active_load_job()


@app.get("/models/load/{job_id}")
def model_load_status(job_id: str):
    job = load_job_snapshot(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"No load job found for id {job_id}")
    return job


@app.get("/messages", response_model=ConversationResponse)
def list_messages():
    return _conversation_payload()


@app.post("/chat", response_model=ConversationResponse)
async def chat(request: ChatRequest):
    if not request.content.strip():
        return _conversation_payload(sent=False)
    if conversation.is_typing:
        raise HTTPException(status_code=409, detail="A reply is still pending.")

    engine = current_engine()
    if engine is None:
        state = runtime_state()
        detail = f"Model {state['model_id']} is not ready (status: {state['load_status']})."
        if state["load_error"]:
            detail = f"{detail} {state['load_error']}"
        raise HTTPException(status_code=503, detail=detail)

    await conversation.send(request.content, engine)
    return _conversation_payload(sent=True)


@app.post("/reset", response_model=ConversationResponse)
def reset():
    if conversation.is_typing:
        raise HTTPException(status_code=409, detail="A reply is still pending.")
    conversation.reset()
    return _conversation_payload()


@app.post("/format", response_model=FormatResponse)
def format_text(request: Optional[FormatRequest] = Body(default=None)):
    payload = request or FormatRequest()
    return FormatResponse(html=format_message(payload.text, escape_html=payload.escape_html))


if __name__ == "__main__":
    uvicorn.run("app:app", host="0.0.0.0", port=PORT, reload=False)
