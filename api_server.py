"""
api_server.py: JSON HTTP API for the detection & resolution pipeline.

Runs as an aiohttp web server. Collaborators (store, vision provider,
catalog backend) are built once in main.py and attached to the app; every
handler pulls them from request.app and passes them down explicitly.

Endpoints (all but /health need `Authorization: Bearer <token>`):
  GET  /health                               → liveness check
  POST /images                               → register an image reference
  GET  /images                               → list registered images
  GET  /images/{image_id}/results            → detections + candidates
  POST /detect                               → run the vision detector
  POST /detections/{detection_id}/candidates → search the catalog, store candidates
  GET  /detections/{detection_id}/candidates → stored candidates
  POST /resolve                              → commit one candidate to a detection

Errors always come back as {"error", "kind", "details"?} with the status
attached to the error kind (see errors.py).
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Optional

from aiohttp import web

import config
import pipeline
from auth import Principal, authenticate
from database import DetectionStore
from errors import CatalogUnavailable, DetectionUnavailable, InvalidInput, PipelineError
from providers.base import VisionProvider
from providers.manager import detect
from resolution import resolve
from search_backends.base import CatalogBackend

logger = logging.getLogger(__name__)

STORE_KEY    = web.AppKey("store", DetectionStore)
PROVIDER_KEY = web.AppKey("provider", object)
BACKEND_KEY  = web.AppKey("backend", object)

_PUBLIC_PATHS = {"/health"}

PRINCIPAL_KEY = web.RequestKey("principal", Principal)

# aiohttp's own 4xx/5xx (unknown route, body too large) mapped onto error kinds
_HTTP_KINDS = {
    401: "Unauthorized",
    404: "NotFound",
    405: "MethodNotAllowed",
    413: "InvalidInput",
    500: "InternalError",
}

# candidate search refinements: JSON field → pipeline.propose_candidates kwarg
_SEARCH_FIELDS = {
    "searchTerm":  "search_term",
    "brandName":   "brand",
    "productName": "product_name",
    "flavor":      "flavor",
    "size":        "size",
}


# ── Middlewares ────────────────────────────────────────────────────────────────

@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Translate typed pipeline errors into JSON; hide everything else."""
    try:
        return await handler(request)
    except PipelineError as exc:
        if exc.status >= 500:
            logger.error("%s %s → %s: %s", request.method, request.path, exc.kind, exc)
        return web.json_response(exc.to_dict(), status=exc.status)
    except web.HTTPException as exc:
        if exc.status < 400:
            raise
        return web.json_response(
            {"error": exc.reason, "kind": _HTTP_KINDS.get(exc.status, "InvalidInput"),
             "details": exc.text},
            status=exc.status,
        )
    except Exception:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return web.json_response(
            {"error": "Internal server error", "kind": "InternalError"}, status=500
        )


@web.middleware
async def auth_middleware(request: web.Request, handler) -> web.StreamResponse:
    if request.path not in _PUBLIC_PATHS:
        request[PRINCIPAL_KEY] = await authenticate(
            request.app[STORE_KEY], request.headers.get("Authorization")
        )
    return await handler(request)


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidInput("Request body must be valid JSON") from exc
    if not isinstance(body, dict):
        raise InvalidInput("Request body must be a JSON object")
    return body


def _decode_image(data: str) -> bytes:
    """Accept raw base64 or a data: URL."""
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidInput("imageData is not valid base64") from exc


def _provider(request: web.Request) -> VisionProvider:
    provider: Optional[VisionProvider] = request.app[PROVIDER_KEY]
    if provider is None:
        raise DetectionUnavailable("No vision provider configured")
    return provider


def _backend(request: web.Request) -> CatalogBackend:
    backend: Optional[CatalogBackend] = request.app[BACKEND_KEY]
    if backend is None:
        raise CatalogUnavailable("No catalog backend configured")
    return backend


# ── Request handlers ───────────────────────────────────────────────────────────

async def handle_health(request: web.Request) -> web.Response:
    """Health check for uptime monitors."""
    return web.json_response({"status": "ok"})


async def handle_create_image(request: web.Request) -> web.Response:
    body = await _json_body(request)
    uri, mime_type = body.get("uri"), body.get("mimeType", "image/jpeg")
    if not uri:
        raise InvalidInput("uri is required")
    if not isinstance(uri, str) or not isinstance(mime_type, str):
        raise InvalidInput("uri and mimeType must be strings")
    image = await pipeline.register_image(request.app[STORE_KEY], uri, mime_type)
    return web.json_response({"image": image.to_dict()}, status=201)


async def handle_list_images(request: web.Request) -> web.Response:
    images = await request.app[STORE_KEY].list_images()
    return web.json_response({"images": [i.to_dict() for i in images]})


async def handle_image_results(request: web.Request) -> web.Response:
    results = await pipeline.image_results(
        request.app[STORE_KEY], request.match_info["image_id"]
    )
    return web.json_response(results.to_dict())


async def handle_detect(request: web.Request) -> web.Response:
    """
    Body: {imageData: base64, mimeType, imageId?}
    With imageId the detections are stored against that image and returned
    with their ids; without it they are only normalised and returned.
    """
    body = await _json_body(request)
    image_data, mime_type = body.get("imageData"), body.get("mimeType")
    if not image_data or not mime_type:
        raise InvalidInput("imageData and mimeType are required")
    if not isinstance(image_data, str) or not isinstance(mime_type, str):
        raise InvalidInput("imageData and mimeType must be strings")

    image_bytes = _decode_image(image_data)
    provider = _provider(request)

    image_id = body.get("imageId")
    if image_id is not None and not isinstance(image_id, str):
        raise InvalidInput("imageId must be a string")
    if image_id:
        stored = await pipeline.detect_and_store(
            request.app[STORE_KEY], provider, image_id, image_bytes, mime_type
        )
        detections = [
            {"id": d.id, "label": d.label, "boundingBox": d.box.to_dict()} for d in stored
        ]
    else:
        objects = await detect(provider, image_bytes, mime_type)
        detections = [o.to_dict() for o in objects]

    return web.json_response({
        "success": True,
        "detectionsCount": len(detections),
        "detections": detections,
    })


async def handle_propose_candidates(request: web.Request) -> web.Response:
    """
    Optional body: {searchTerm?, brandName?, productName?, flavor?, size?}
    to search with something other than the detection's label.
    """
    body = await _json_body(request) if request.can_read_body else {}
    terms = {}
    for field, arg in _SEARCH_FIELDS.items():
        value = body.get(field)
        if value is not None and not isinstance(value, str):
            raise InvalidInput(f"{field} must be a string")
        terms[arg] = value

    candidates = await pipeline.propose_candidates(
        request.app[STORE_KEY], _backend(request), request.match_info["detection_id"],
        **terms,
    )
    return web.json_response({"candidates": [c.to_dict() for c in candidates]})


async def handle_list_candidates(request: web.Request) -> web.Response:
    candidates = await pipeline.list_candidates(
        request.app[STORE_KEY], request.match_info["detection_id"]
    )
    return web.json_response({"candidates": [c.to_dict() for c in candidates]})


async def handle_resolve(request: web.Request) -> web.Response:
    """Body: {detectionId, candidateId} → {success, detection, savedMatch}."""
    body = await _json_body(request)
    detection_id, candidate_id = body.get("detectionId"), body.get("candidateId")
    if not detection_id or not candidate_id:
        raise InvalidInput("detectionId and candidateId are required")
    result = await resolve(request.app[STORE_KEY], str(detection_id), str(candidate_id))
    return web.json_response(result.to_dict())


# ── App factory ────────────────────────────────────────────────────────────────

def build_web_app(
    store: DetectionStore,
    provider: Optional[VisionProvider] = None,
    backend: Optional[CatalogBackend] = None,
) -> web.Application:
    app = web.Application(
        middlewares=[error_middleware, auth_middleware],
        client_max_size=config.MAX_IMAGE_BYTES * 2,     # base64 overhead
    )
    app[STORE_KEY] = store
    app[PROVIDER_KEY] = provider
    app[BACKEND_KEY] = backend

    app.router.add_get("/health",                                   handle_health)
    app.router.add_post("/images",                                  handle_create_image)
    app.router.add_get("/images",                                   handle_list_images)
    app.router.add_get("/images/{image_id}/results",                handle_image_results)
    app.router.add_post("/detect",                                  handle_detect)
    app.router.add_post("/detections/{detection_id}/candidates",    handle_propose_candidates)
    app.router.add_get("/detections/{detection_id}/candidates",     handle_list_candidates)
    app.router.add_post("/resolve",                                 handle_resolve)
    return app


async def start_server(
    store: DetectionStore,
    provider: Optional[VisionProvider],
    backend: Optional[CatalogBackend],
) -> web.AppRunner:
    """Start the web server. Returns runner so caller can shut it down cleanly."""
    app    = build_web_app(store, provider, backend)
    runner = web.AppRunner(app, access_log=logger)
    await runner.setup()
    site = web.TCPSite(runner, config.API_HOST, config.API_PORT)
    await site.start()
    logger.info("API listening on %s:%d", config.API_HOST, config.API_PORT)
    return runner
