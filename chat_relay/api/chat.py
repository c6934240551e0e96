# chat_relay/api/chat.py
import logging
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import ValidationError
from starlette.datastructures import UploadFile

from ..core.config import settings
from ..core.http import HttpClientFactory
from ..models.chat import AskRequest, AskResponse, ChatExchangeOut, ChatRoomOut
from ..models.user import Principal
from ..services import chat_history, relay, uploads
from ..services.llm import AnswerExtractionFailed, UpstreamExhausted
from .deps import get_current_user, get_http_client_factory

logger = logging.getLogger(__name__)

# prefix /api is added in main.py
router = APIRouter()

STREAM_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


def _form_bool(value) -> Optional[bool]:
    if value is None or value == "":
        return None
    return str(value).strip().lower() in ("1", "true", "yes", "on")


async def _read_multipart(request: Request) -> Tuple[AskRequest, Optional[str]]:
    form = await request.form()
    body = AskRequest(
        prompt=str(form.get("prompt") or ""),
        imageUrl=form.get("imageUrl") or None,
        roomId=form.get("roomId") or None,
        requestId=form.get("requestId") or None,
        stream=_form_bool(form.get("stream")),
    )

    image = form.get("image")
    if not isinstance(image, UploadFile) or not image.filename:
        return body, None

    data = await image.read()
    body.image_url = uploads.save_image(data, image.content_type)
    return body, uploads.to_data_url(data, image.content_type)


async def _read_ask_request(request: Request) -> Tuple[AskRequest, Optional[str]]:
    """Returns the validated body and, for uploads, the inline image for upstream."""
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith("multipart/form-data"):
            return await _read_multipart(request)
        return AskRequest.model_validate(await request.json()), None
    except uploads.UploadRejected as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid request: {e.errors()[0]['msg']}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")


@router.post("/ai/ask", response_model=None)
async def ask_endpoint(
    request: Request,
    principal: Principal = Depends(get_current_user),
    client_factory: HttpClientFactory = Depends(get_http_client_factory),
):
    """
    Relays a prompt to the LLM:
    1. Validates the payload (auth already resolved by the dependency).
    2. Checks the room, if one was given.
    3. Streams the answer (text/event-stream) or returns it whole as JSON.
    The exchange is stored once the full answer is known.
    """
    body, inline_image = await _read_ask_request(request)
    if not body.has_content():
        raise HTTPException(status_code=400, detail="Prompt or image is required")

    relay_request = relay.RelayRequest(
        principal=principal,
        prompt=body.prompt.strip(),
        image_url=body.image_url,
        upstream_image_url=inline_image,
        room_id=body.room_id,
        request_id=body.request_id,
        new_room=settings.AUTO_CREATE_ROOMS and not body.room_id,
    )
    stream = settings.STREAM_RESPONSES if body.stream is None else body.stream

    logger.info(f"Ask from user {principal.user_id}: stream={stream}, room={body.room_id}, image={bool(body.image_url)}")

    try:
        await relay.check_room(relay_request)

        if stream:
            result = await relay.open_stream(relay_request, client_factory())
            headers = dict(STREAM_HEADERS)
            if result.room_id:
                headers["X-Room-Id"] = result.room_id
            return StreamingResponse(result.chunks, media_type="text/event-stream", headers=headers)

        answer = await relay.ask(relay_request, client_factory())
        return JSONResponse(AskResponse(answer=answer.answer, room_id=answer.room_id).model_dump(by_alias=True))

    except relay.RoomNotFound:
        raise HTTPException(status_code=404, detail="Room not found")
    except UpstreamExhausted as e:
        logger.error(f"All models failed for user {principal.user_id}: {e.last_error}")
        raise HTTPException(status_code=500, detail=f"All models failed: {e.last_error}")
    except AnswerExtractionFailed as e:
        logger.error(f"No answer text: {e}")
        raise HTTPException(status_code=500, detail="AI response contained no answer")


@router.get("/history", response_model=List[ChatExchangeOut])
async def history_endpoint(
    room_id: Optional[str] = Query(None, alias="roomId"),
    limit: int = Query(settings.HISTORY_LIMIT, ge=1, le=500),
    principal: Principal = Depends(get_current_user),
):
    rows = await chat_history.get_history(principal.user_id, room_id=room_id, limit=limit)
    return [ChatExchangeOut.model_validate(row) for row in rows]


@router.get("/rooms", response_model=List[ChatRoomOut])
async def rooms_endpoint(principal: Principal = Depends(get_current_user)):
    rooms = await chat_history.list_rooms(principal.user_id)
    return [ChatRoomOut.model_validate(room) for room in rooms]


# === Stored uploads (GET /api/uploads/{filename}) ===
@router.get("/uploads/{filename}")
async def upload_file(filename: str):
    try:
        path = uploads.resolve_upload(filename)
    except uploads.UploadRejected as e:
        logger.warning(f"Suspicious upload request: {filename}")
        raise HTTPException(status_code=400, detail=str(e))
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Not found")

    return FileResponse(
        path,
        media_type=uploads.CONTENT_TYPES[path.suffix.lower()],
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )
