import logging
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from storefront.cache import GenerationCache
from storefront.context import default_context, normalize
from storefront.models import (
    GenerateRequest,
    GenerateResponse,
    PersonalizeRequest,
    PersonalizeResponse,
    RequestContext,
    ResponseContext,
)
from storefront.orchestrator import Orchestrator
from storefront.personalize import PersonalizationEngine, new_personalize_cache
from storefront.providers import ImageProvider, TextProvider, status as provider_status
from storefront.weather import WeatherClient


if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

log = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dump(model: Any) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _generate_error(
    status_code: int,
    message: str,
    start: float,
    ctx: Optional[RequestContext] = None,
) -> JSONResponse:
    body = GenerateResponse(
        success=False,
        error=message,
        cached=False,
        processing_time_ms=_elapsed_ms(start),
        context=ResponseContext.from_context(ctx or default_context()),
    )
    return JSONResponse(status_code=status_code, content=_dump(body))


def _personalize_error(status_code: int, message: str, start: float) -> JSONResponse:
    body = PersonalizeResponse(success=False, error=message, cached=False, processing_time_ms=_elapsed_ms(start))
    return JSONResponse(status_code=status_code, content=_dump(body))


async def _json_object(request: Request) -> Optional[Dict[str, Any]]:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _first_error(exc: ValidationError) -> str:
    errs = exc.errors()
    if not errs:
        return "invalid request body"
    first = errs[0]
    loc = ".".join(str(p) for p in first.get("loc", ()))
    return f"{loc}: {first.get('msg', 'invalid value')}" if loc else str(first.get("msg", "invalid value"))


def create_app(
    orchestrator: Optional[Orchestrator] = None,
    engine: Optional[PersonalizationEngine] = None,
    weather: Optional[WeatherClient] = None,
    image_provider: Optional[ImageProvider] = None,
    text_provider: Optional[TextProvider] = None,
) -> FastAPI:
    image_provider = image_provider or ImageProvider()
    text_provider = text_provider or TextProvider()
    if orchestrator is None:
        orchestrator = Orchestrator(GenerationCache(), image_provider, text_provider)
    if engine is None:
        engine = PersonalizationEngine(new_personalize_cache(), text_provider)
    if weather is None:
        weather = WeatherClient()

    app = FastAPI(title="storefront-personalizer")
    app.state.orchestrator = orchestrator
    app.state.engine = engine
    app.state.weather = weather
    app.state.image_provider = image_provider
    app.state.text_provider = text_provider

    allow_origins = [o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins or ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
        max_age=86400,
    )

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = str(uuid.uuid4())
        start = time.time()
        request.state.request_id = rid
        response = None
        try:
            response = await call_next(request)
            return response
        finally:
            dur_ms = int((time.time() - start) * 1000)
            log.info(
                "rid=%s method=%s path=%s status=%s dur_ms=%d",
                rid,
                request.method,
                request.url.path,
                getattr(response, "status_code", "?"),
                dur_ms,
            )

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok", "timestamp": _now_iso()}

    @app.get("/llm/status")
    def llm_status_endpoint() -> Dict[str, Any]:
        return provider_status(app.state.image_provider, app.state.text_provider)

    @app.get("/api/generate/health")
    def generate_health() -> Dict[str, Any]:
        return {"status": "ok", "timestamp": _now_iso(), "cache": app.state.orchestrator.cache.stats()}

    @app.post("/api/generate")
    async def generate_endpoint(request: Request):
        start = time.monotonic()
        body = await _json_object(request)
        if body is None:
            return _generate_error(400, "request body must be a JSON object", start)
        try:
            req = GenerateRequest.model_validate(body)
        except ValidationError as exc:
            return _generate_error(400, _first_error(exc), start)
        if not (req.subject_url or "").strip():
            return _generate_error(400, "subjectURL is required", start)

        ctx: Optional[RequestContext] = None
        try:
            ctx = await normalize(
                req,
                subject_kind=req.subject_kind,
                subject_identity=req.subject_id or req.subject_url,
                weather_lookup=app.state.weather.lookup,
            )
            outcome = await app.state.orchestrator.generate(
                ctx,
                req.meta(),
                source_url=req.subject_url,
                force_regenerate=req.force_regenerate,
            )
        except Exception as exc:
            log.exception("generate.endpoint: unexpected failure")
            return _generate_error(500, str(exc) or "internal error", start, ctx)

        resp = GenerateResponse(
            success=outcome.success,
            artifact_url=outcome.artifact_url,
            generator_input=outcome.generator_input,
            cached=outcome.cached,
            processing_time_ms=_elapsed_ms(start),
            error=outcome.error,
            context=ResponseContext.from_context(ctx),
        )
        # provider failures are handled and reported, but the artifact is missing
        status_code = 200 if outcome.success else 502
        return JSONResponse(status_code=status_code, content=_dump(resp))

    @app.get("/api/personalize/health")
    def personalize_health() -> Dict[str, Any]:
        return {"status": "ok", "cacheSize": len(app.state.engine.cache), "timestamp": _now_iso()}

    @app.post("/api/personalize")
    async def personalize_endpoint(request: Request):
        start = time.monotonic()
        body = await _json_object(request)
        if body is None:
            return _personalize_error(400, "request body must be a JSON object", start)
        try:
            req = PersonalizeRequest.model_validate(body)
        except ValidationError as exc:
            return _personalize_error(400, _first_error(exc), start)
        try:
            outcome = await app.state.engine.personalize(req)
        except Exception as exc:
            log.exception("personalize.endpoint: unexpected failure")
            return _personalize_error(500, str(exc) or "internal error", start)
        resp = PersonalizeResponse(
            success=True,
            cached=outcome.cached,
            config=outcome.config,
            processing_time_ms=_elapsed_ms(start),
        )
        return JSONResponse(content=_dump(resp))

    return app


app = create_app()
