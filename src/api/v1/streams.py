"""Endpoints for parsing, ingesting and recovering generation streams."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path, Request, Response, status

from core.config import Settings, get_settings
from dependencies.streaming import (
    get_checkpoint_manager,
    get_request_coalescer,
    get_stream_parser,
)
from schemas.api import ApiResponse
from schemas.streaming import (
    Checkpoint,
    ParsedResponse,
    ParseRequest,
    StreamOutcomeSummary,
)
from services.streaming.checkpoints import CheckpointManager
from services.streaming.coalescer import RequestCoalescer
from services.streaming.exceptions import CheckpointNotFoundError, UpstreamStreamError
from services.streaming.parser import BatchProtocolParser
from services.streaming.reader import StreamReader


router = APIRouter(tags=["streams"])

StreamKey = Annotated[
    str,
    Path(
        min_length=1,
        max_length=256,
        description="Caller-supplied identity of the generation, e.g. a message id",
    ),
]


@router.post(
    "/responses/parse",
    response_model=ApiResponse[ParsedResponse],
    summary="Parse a raw marker buffer",
    description=(
        "Run the batch protocol parser over a complete or truncated raw buffer and "
        "return display text, reasoning, structured items, statuses and the "
        "classified response kind."
    ),
)
async def parse_response(
    body: ParseRequest,
    parser: Annotated[BatchProtocolParser, Depends(get_stream_parser)],
) -> ApiResponse[ParsedResponse]:
    return ApiResponse(data=parser.parse(body.raw), message="Response parsed")


@router.post(
    "/streams/{stream_key}/ingest",
    response_model=ApiResponse[StreamOutcomeSummary],
    summary="Ingest an NDJSON generation stream",
    responses={
        200: {"description": "Stream completed or was recovered from a checkpoint"},
        502: {"description": "Stream failed and no checkpoint was available"},
    },
)
async def ingest_stream(
    stream_key: StreamKey,
    request: Request,
    manager: Annotated[CheckpointManager, Depends(get_checkpoint_manager)],
    parser: Annotated[BatchProtocolParser, Depends(get_stream_parser)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> ApiResponse[StreamOutcomeSummary]:
    """Consume the request body as a live stream.

    The body is read chunk by chunk, checkpointed on the configured cadence
    and parsed once the body ends or a ``done`` event arrives.
    """
    reader = StreamReader(
        stream_key,
        parser=parser,
        checkpoints=manager,
        min_update_interval=settings.STREAM_UPDATE_MIN_INTERVAL_MS / 1000,
    )
    try:
        outcome = await reader.consume(request.stream())
    except UpstreamStreamError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=exc.message,
        ) from exc
    return ApiResponse(data=outcome.summary(), message=f"Stream {outcome.status}")


@router.get(
    "/streams/{stream_key}/checkpoint",
    response_model=ApiResponse[Checkpoint],
    summary="Fetch the latest checkpoint",
    responses={404: {"description": "No checkpoint stored for this stream"}},
)
async def get_checkpoint(
    stream_key: StreamKey,
    manager: Annotated[CheckpointManager, Depends(get_checkpoint_manager)],
) -> ApiResponse[Checkpoint]:
    checkpoint = await manager.load(stream_key)
    if checkpoint is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Checkpoint not found"
        )
    return ApiResponse(data=checkpoint, message="Checkpoint loaded")


@router.delete(
    "/streams/{stream_key}/checkpoint",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Discard the checkpoint for a stream",
)
async def delete_checkpoint(
    stream_key: StreamKey,
    manager: Annotated[CheckpointManager, Depends(get_checkpoint_manager)],
) -> Response:
    manager.storage_key(stream_key)
    await manager.clear(stream_key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/streams/{stream_key}/recover",
    response_model=ApiResponse[ParsedResponse],
    summary="Recover a response from the last checkpoint",
    responses={404: {"description": "Recovery unavailable: no checkpoint"}},
)
async def recover_stream(
    stream_key: StreamKey,
    manager: Annotated[CheckpointManager, Depends(get_checkpoint_manager)],
    coalescer: Annotated[RequestCoalescer, Depends(get_request_coalescer)],
) -> ApiResponse[ParsedResponse]:
    """Re-parse the stored raw buffer; concurrent calls for one key share a run."""
    manager.storage_key(stream_key)
    try:
        response = await coalescer.execute(
            f"recover:{stream_key}", lambda: manager.recover(stream_key)
        )
    except CheckpointNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error_code": exc.error_code, "message": exc.message},
        ) from exc
    return ApiResponse(data=response, message="Response recovered from checkpoint")
