"""HTTP surface: FastAPI routes with JSON or server-sent-event responses."""

import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import AliasChoices, BaseModel, Field

from voiceover_producer.config import Settings
from voiceover_producer.constants import VERSION
from voiceover_producer.errors import ValidationError, VoiceoverError, user_message
from voiceover_producer.models import VoiceoverRequest
from voiceover_producer.pipeline import VoiceoverPipeline
from voiceover_producer.progress import ProgressChannel

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

_VOICE_URL = AliasChoices("referenceVoiceUrl", "voiceSampleUrl", "reference_voice_url")
_GROUP_ID = AliasChoices("assetGroupId", "projectId", "asset_group_id")


class GenerateAudioBody(BaseModel):
    script: str = ""
    reference_voice_url: str | None = Field(None, validation_alias=_VOICE_URL)
    asset_group_id: str | None = Field(None, validation_alias=_GROUP_ID)
    speed: float = 1.0
    stream: bool = True


class RegenerateSegmentBody(BaseModel):
    segment_text: str = Field("", validation_alias=AliasChoices("segmentText", "segment_text"))
    segment_index: int = Field(0, validation_alias=AliasChoices("segmentIndex", "segment_index"))
    reference_voice_url: str | None = Field(None, validation_alias=_VOICE_URL)
    asset_group_id: str = Field("", validation_alias=_GROUP_ID)


class StoredSegment(BaseModel):
    index: int
    size: int = 0


class RecombineBody(BaseModel):
    asset_group_id: str = Field("", validation_alias=_GROUP_ID)
    segments: list[StoredSegment] = []
    speed: float = 1.0


def error_response(exc: BaseException) -> JSONResponse:
    """Translate an exception into the public error body."""
    status = 400 if isinstance(exc, ValidationError) else 500
    if isinstance(exc, VoiceoverError):
        logger.warning("Request failed (%d): %s", status, exc)
    else:
        logger.error("Request failed unexpectedly: %r", exc)
    return JSONResponse({"success": False, "error": user_message(exc)}, status_code=status)


def create_app(pipeline: VoiceoverPipeline | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or (pipeline.settings if pipeline else Settings.from_env())
    pipeline = pipeline or VoiceoverPipeline.from_settings(settings)
    jobs = pipeline.jobs

    app = FastAPI(title="Voice-over Producer", version=VERSION)
    app.state.pipeline = pipeline
    app.state.tasks = set()

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"Invalid field '{field}'" if field else "Invalid request body"
        return JSONResponse({"success": False, "error": message}, status_code=400)

    async def run_job(request: VoiceoverRequest, channel: ProgressChannel, job_id: str) -> None:
        try:
            await pipeline.generate(request, channel, job_id)
        except Exception:
            # Already reported to the channel and the job store
            logger.debug("Job %s ended with an error", job_id)

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": VERSION}

    @app.post("/generate-audio")
    async def generate_audio(body: GenerateAudioBody):
        if not body.script.strip():
            return error_response(ValidationError("Script is required"))

        request = VoiceoverRequest(body.script, body.reference_voice_url, body.asset_group_id, body.speed)
        record = jobs.create()
        logger.info("Job %s: %d chars, stream=%s", record.job_id, len(body.script), body.stream)

        if body.stream:
            channel = ProgressChannel()
            task = asyncio.create_task(run_job(request, channel, record.job_id))
            app.state.tasks.add(task)
            task.add_done_callback(app.state.tasks.discard)
            headers = {**SSE_HEADERS, "X-Job-Id": record.job_id}
            return StreamingResponse(
                channel.sse(pipeline.settings.heartbeat_interval),
                media_type="text/event-stream",
                headers=headers,
            )

        try:
            result = await pipeline.generate(request, job_id=record.job_id)
        except Exception as exc:
            return error_response(exc)
        return {**result.to_dict(), "jobId": record.job_id}

    @app.post("/generate-audio/segment")
    async def regenerate_segment(body: RegenerateSegmentBody):
        try:
            result = await pipeline.regenerate_segment(
                body.segment_text, body.segment_index, body.asset_group_id, body.reference_voice_url,
            )
        except Exception as exc:
            return error_response(exc)
        return {"success": True, "segment": result.to_dict()}

    @app.post("/generate-audio/recombine")
    async def recombine(body: RecombineBody):
        try:
            result = await pipeline.recombine(
                body.asset_group_id, [(s.index, s.size) for s in body.segments], body.speed,
            )
        except Exception as exc:
            return error_response(exc)
        return result.to_dict()

    @app.get("/generate-audio/jobs/{job_id}")
    async def job_status(job_id: str):
        record = jobs.get(job_id)
        if record is None:
            return JSONResponse({"success": False, "error": "Job not found"}, status_code=404)
        return record.to_dict()

    return app
