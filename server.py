"""
FastAPI Masonry Layout Application
A web API that arranges images into masonry grids on a fixed canvas and
renders the resulting collages
"""

import hashlib
import uuid
import json
import asyncio
import re
import shutil
import logging
import time
from typing import List, Optional, Dict, Literal
from datetime import datetime
from enum import Enum

from fastapi import FastAPI, UploadFile, File, HTTPException, Query, Form
from fastapi.responses import FileResponse, JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from PIL import Image, ImageOps
from config import AppSettings
from redis.asyncio import Redis as AsyncRedis
from celery_app import celery_app
import aiofiles
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

from collections import defaultdict
from logging.handlers import RotatingFileHandler

from arrange import (
    ArrangeResult,
    AutoArrangeRequest,
    CanvasObject,
    PhotobookArrangeRequest,
    arrange_canvas,
    arrange_photobook,
)
from masonry import (
    LayoutError,
    MasonryImage,
    MasonryLayoutRequest,
    MasonryLayoutResult,
    PageBounds,
    PageTarget,
    calculate_optimal_column_count,
    calculate_spaced_masonry_layout,
    calculate_tight_masonry_layout,
    evaluate_column_candidates,
    get_page_bounds,
    is_in_page_bounds,
    solve,
)
from renderer import OutputFormat, RenderConfig, raster_size, render_wireframe


def _configure_logging():
    handlers = [logging.StreamHandler()]
    if settings.log_to_file:
        handlers.append(RotatingFileHandler(
            settings.log_file_path,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count
        ))
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
    return logging.getLogger(__name__)

# Load settings
settings = AppSettings()

# Configure logging (after settings)
logger = _configure_logging()

# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Arrange images into masonry layouts and render collages",
    version=settings.app_version
)
# Prometheus metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status']
)
REQUEST_LATENCY = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency (seconds)',
    ['method', 'path']
)
LAYOUT_SOLVE_LATENCY = Histogram(
    'layout_solve_seconds',
    'Time spent computing a masonry layout (seconds)'
)
LAYOUT_COLUMNS = Histogram(
    'layout_selected_columns',
    'Column count of returned masonry layouts',
    buckets=(1, 2, 3, 4, 5, 6, 7, 8, 12, 16)
)
ACTIVE_JOBS = Gauge('collage_active_jobs', 'Number of active jobs (pending+processing)')
TOTAL_JOBS = Gauge('collage_total_jobs', 'Number of jobs currently stored')

# Startup/Shutdown events: init redis and start cleanup loop
@app.on_event("startup")
async def on_startup():
    global redis_client
    if settings.redis_url:
        redis_client = AsyncRedis.from_url(settings.redis_url, decode_responses=True)
    else:
        redis_client = AsyncRedis(host=settings.redis_host, port=settings.redis_port, db=settings.redis_db, decode_responses=True)
    asyncio.create_task(_cleanup_loop())

@app.on_event("shutdown")
async def on_shutdown():
    global redis_client
    if redis_client is not None:
        await redis_client.close()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Configuration
OUTPUT_DIR = settings.output_dir
TEMP_DIR = settings.temp_dir
MAX_IMAGE_SIZE = settings.max_image_size
MAX_TOTAL_SIZE = settings.max_total_size
MAX_CANVAS_PIXELS = settings.max_canvas_pixels
MAX_COLLAGE_IMAGES = settings.max_collage_images
MAX_LAYOUT_IMAGES = settings.max_layout_images
STREAM_CHUNK_SIZE = 1024 * 1024  # 1MB per chunk

for dir_path in [OUTPUT_DIR, TEMP_DIR]:
    dir_path.mkdir(exist_ok=True)

# Guard against decompression bombs for very large images
Image.MAX_IMAGE_PIXELS = MAX_CANVAS_PIXELS

# Redis client (initialized on startup)
redis_client: AsyncRedis | None = None

def _job_key(job_id: str) -> str:
    return f"job:{job_id}"

async def _get_redis() -> AsyncRedis:
    global redis_client
    if redis_client is None:
        # Lazy init if startup not called (e.g., tests)
        if settings.redis_url:
            redis_client = AsyncRedis.from_url(settings.redis_url, decode_responses=True)
        else:
            redis_client = AsyncRedis(host=settings.redis_host, port=settings.redis_port, db=settings.redis_db, decode_responses=True)
    return redis_client

async def save_job(job: 'CollageJob') -> None:
    client = await _get_redis()
    payload = {
        'job_id': job.job_id,
        'status': job.status.value,
        'created_at': job.created_at.isoformat(),
        'completed_at': job.completed_at.isoformat() if job.completed_at else None,
        'output_file': job.output_file,
        'error_message': job.error_message,
        'progress': job.progress,
        'image_count': job.image_count,
    }
    await client.set(_job_key(job.job_id), json.dumps(payload), ex=settings.job_ttl_seconds)

async def get_job(job_id: str) -> Optional[Dict]:
    client = await _get_redis()
    raw = await client.get(_job_key(job_id))
    return json.loads(raw) if raw else None

async def delete_job(job_id: str) -> None:
    client = await _get_redis()
    await client.delete(_job_key(job_id))

async def list_all_jobs() -> List[Dict]:
    client = await _get_redis()
    cursor = 0
    keys: List[str] = []
    while True:
        cursor, batch = await client.scan(cursor=cursor, match='job:*', count=200)
        keys.extend(batch)
        if cursor == 0:
            break
    if not keys:
        return []
    values = await client.mget(keys)
    return [json.loads(v) for v in values if v]

async def count_active_jobs() -> int:
    jobs = await list_all_jobs()
    return sum(1 for j in jobs if j.get('status') in [JobStatus.PENDING.value, JobStatus.PROCESSING.value])

async def is_redis_connected() -> bool:
    try:
        client = await _get_redis()
        return bool(await client.ping())
    except Exception:
        return False

async def cleanup_stale_files() -> None:
    """Delete files for jobs that no longer exist in Redis (expired/cleaned)."""
    client = await _get_redis()
    # Temp files: {job_id}_{index}_{filename}
    for file in TEMP_DIR.glob('*_*'):
        job_id = file.name.split('_', 1)[0]
        if not await client.exists(_job_key(job_id)):
            file.unlink(missing_ok=True)
    # Outputs: collage_{job_id}.ext
    for file in OUTPUT_DIR.glob('collage_*'):
        job_id = file.stem.split('collage_', 1)[1]
        if not await client.exists(_job_key(job_id)):
            file.unlink(missing_ok=True)

async def _cleanup_loop():
    while True:
        await asyncio.sleep(settings.cleanup_interval_seconds)
        try:
            await cleanup_stale_files()
        except Exception as e:
            logger.error(f"Stale file cleanup failed: {e}")

# Enums
class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

class LayoutPreset(str, Enum):
    TIGHT = "tight"
    SPACED = "spaced"

# Pydantic models
class CollageJob(BaseModel):
    job_id: str
    status: JobStatus
    created_at: datetime
    completed_at: Optional[datetime] = None
    output_file: Optional[str] = None
    error_message: Optional[str] = None
    progress: int = Field(default=0, ge=0, le=100)
    image_count: int = 0

class CreateCollageResponse(BaseModel):
    job_id: str
    status: Literal["pending", "processing", "completed", "failed"]
    message: str

class CollageJobPublic(BaseModel):
    job_id: str
    status: JobStatus
    created_at: datetime
    completed_at: Optional[datetime] = None
    output_file: Optional[str] = None
    error_message: Optional[str] = None
    progress: int
    image_count: int = 0
    column_count: Optional[int] = None
    fill_rate: Optional[float] = None

class CleanupResponse(BaseModel):
    message: str

class PageMembershipRequest(BaseModel):
    spread_width: float = Field(gt=0)
    target: PageTarget = PageTarget.BOTH
    objects: List[CanvasObject] = Field(default_factory=list)

class PageMembershipResponse(BaseModel):
    target: PageTarget
    ids: List[str]

def _job_public(job: Dict) -> CollageJobPublic:
    completed_at = job.get('completed_at')
    return CollageJobPublic(
        job_id=job.get('job_id'),
        status=JobStatus(job.get('status')),
        created_at=datetime.fromisoformat(job.get('created_at')),
        completed_at=datetime.fromisoformat(completed_at) if completed_at else None,
        output_file=job.get('output_file'),
        error_message=job.get('error_message'),
        progress=int(job.get('progress') or 0),
        image_count=int(job.get('image_count') or 0),
        column_count=job.get('column_count'),
        fill_rate=job.get('fill_rate'),
    )


# Rate limiting (simple in-memory implementation)
rate_limit_store = defaultdict(list)
RATE_LIMIT_REQUESTS = settings.rate_limit_requests  # requests per window
RATE_LIMIT_WINDOW = settings.rate_limit_window_seconds  # seconds

def check_rate_limit(client_ip: str) -> bool:
    """Simple rate limiting check"""
    now = time.time()
    rate_limit_store[client_ip] = [
        req_time for req_time in rate_limit_store[client_ip]
        if now - req_time < RATE_LIMIT_WINDOW
    ]

    if len(rate_limit_store[client_ip]) >= RATE_LIMIT_REQUESTS:
        return False

    rate_limit_store[client_ip].append(now)
    return True

def validate_image_file(file_path: str) -> bool:
    """Validate that file is actually an image Pillow can decode"""
    try:
        with Image.open(file_path) as img:
            img.verify()
        return True
    except Exception:
        return False

def read_aspect_ratio(file_path: str) -> float:
    """Width / height of the image as it will be displayed (EXIF orientation applied)."""
    with Image.open(file_path) as img:
        img = ImageOps.exif_transpose(img)
        return img.width / img.height

def sanitize_filename(filename: str) -> str:
    """Sanitize filename to prevent path traversal"""
    filename = re.sub(r'[<>:"/\\|?*]', '', filename)
    return filename[:100]

def _discard_uploads(job_id: str) -> None:
    for file in TEMP_DIR.glob(f"{job_id}_*"):
        file.unlink(missing_ok=True)

def _with_default_spacing(request: MasonryLayoutRequest) -> MasonryLayoutRequest:
    """Fill gap/padding the caller left out from settings."""
    updates = {}
    if 'gap' not in request.model_fields_set:
        updates['gap'] = settings.default_gap
    if 'padding' not in request.model_fields_set:
        updates['padding'] = settings.default_padding
    return request.model_copy(update=updates) if updates else request

def _check_layout_size(request: MasonryLayoutRequest) -> None:
    if len(request.images) > MAX_LAYOUT_IMAGES:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_LAYOUT_IMAGES} images allowed")

# API Endpoints

@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "endpoints": {
            "masonry_layout": "/api/layout/masonry",
            "analyze_columns": "/api/layout/masonry/analyze",
            "preview": "/api/layout/masonry/preview",
            "page_bounds": "/api/layout/page-bounds",
            "page_membership": "/api/layout/page-membership",
            "arrange_canvas": "/api/arrange/canvas",
            "arrange_photobook": "/api/arrange/photobook",
            "create_collage": "/api/collage/create",
            "get_status": "/api/collage/status/{job_id}",
            "download": "/api/collage/download/{job_id}",
            "list_jobs": "/api/collage/jobs"
        }
    }

@app.post("/api/layout/masonry", response_model=MasonryLayoutResult)
async def masonry_layout(request: MasonryLayoutRequest, preset: Optional[LayoutPreset] = Query(default=None)):
    """Compute a masonry layout for images of known aspect ratio.

    preset=tight forces gap and padding to 0, preset=spaced forces both to 5.
    """
    _check_layout_size(request)
    try:
        with LAYOUT_SOLVE_LATENCY.time():
            if preset == LayoutPreset.TIGHT:
                result = calculate_tight_masonry_layout(
                    request.canvas_width, request.canvas_height, request.images, request.column_count
                )
            elif preset == LayoutPreset.SPACED:
                result = calculate_spaced_masonry_layout(
                    request.canvas_width, request.canvas_height, request.images, request.column_count
                )
            else:
                result = solve(_with_default_spacing(request))
    except LayoutError as e:
        logger.warning(f"Masonry layout rejected: {e}")
        raise HTTPException(status_code=422, detail=str(e))

    if result.placements:
        LAYOUT_COLUMNS.observe(result.actual_column_count)
    return result

@app.post("/api/layout/masonry/analyze")
async def analyze_masonry_layout(request: MasonryLayoutRequest):
    """
    Report how every candidate column count scored

    The search always runs over 1..min(8, image count); a pinned column_count
    in the request is ignored here.
    """
    _check_layout_size(request)
    request = _with_default_spacing(request).model_copy(update={"column_count": None})
    try:
        candidates = evaluate_column_candidates(request)
    except LayoutError as e:
        logger.warning(f"Masonry analysis rejected: {e}")
        raise HTTPException(status_code=422, detail=str(e))

    selected = next((c for c in candidates if c.selected), None)
    return {
        "success": True,
        "analysis": {
            "canvas": {
                "width": request.canvas_width,
                "height": request.canvas_height,
                "area": request.canvas_width * request.canvas_height,
                "gap": request.gap,
                "padding": request.padding,
            },
            "image_count": len(request.images),
            "candidates": [c.model_dump(exclude={"layout"}) for c in candidates],
            "selected_column_count": selected.column_count if selected else None,
            "legacy_column_count": calculate_optimal_column_count(len(request.images)),
        },
        "message": "Masonry layout analysis completed successfully"
    }

@app.post("/api/layout/masonry/preview")
async def preview_masonry_layout(request: MasonryLayoutRequest):
    """Render the solved layout as a PNG wireframe"""
    _check_layout_size(request)
    try:
        with LAYOUT_SOLVE_LATENCY.time():
            layout = solve(_with_default_spacing(request))
    except LayoutError as e:
        raise HTTPException(status_code=422, detail=str(e))

    try:
        width, height = raster_size(request.canvas_width, request.canvas_height)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if width * height > MAX_CANVAS_PIXELS:
        raise HTTPException(status_code=400, detail="Canvas too large to preview")
    png = render_wireframe(
        layout, request.canvas_width, request.canvas_height, max_canvas_pixels=MAX_CANVAS_PIXELS
    )
    return Response(
        content=png,
        media_type="image/png",
        headers={"X-Column-Count": str(layout.actual_column_count), "X-Fill-Rate": f"{layout.fill_rate:.4f}"},
    )

@app.get("/api/layout/page-bounds", response_model=PageBounds)
async def page_bounds(
    spread_width: float = Query(..., gt=0),
    spread_height: float = Query(..., gt=0),
    target: PageTarget = Query(default=PageTarget.BOTH),
):
    """Rectangle of the left page, right page, or whole spread"""
    return get_page_bounds(spread_width, spread_height, target)

@app.post("/api/layout/page-membership", response_model=PageMembershipResponse)
async def page_membership(request: PageMembershipRequest):
    """Ids of the objects whose horizontal center lies on the target page"""
    ids = [
        obj.id for obj in request.objects
        if is_in_page_bounds(obj.x, obj.width, request.spread_width, request.target)
    ]
    return PageMembershipResponse(target=request.target, ids=ids)

@app.post("/api/arrange/canvas", response_model=ArrangeResult)
async def auto_arrange_canvas(request: AutoArrangeRequest):
    """Auto-arrange the image objects of an editor canvas"""
    try:
        return arrange_canvas(request, gap=settings.arrange_gap, padding=settings.arrange_padding)
    except LayoutError as e:
        logger.warning(f"Canvas arrange rejected: {e}")
        raise HTTPException(status_code=422, detail=str(e))

@app.post("/api/arrange/photobook", response_model=ArrangeResult)
async def auto_arrange_photobook(request: PhotobookArrangeRequest):
    """Auto-arrange the image objects of one page (or both pages) of a photobook spread"""
    try:
        return arrange_photobook(request, gap=settings.arrange_gap, padding=settings.arrange_padding)
    except LayoutError as e:
        logger.warning(f"Photobook arrange rejected: {e}")
        raise HTTPException(status_code=422, detail=str(e))

@app.post("/api/collage/create", response_model=CreateCollageResponse)
async def create_collage(
    files: List[UploadFile] = File(...),
    width_px: int = Form(default=1920, ge=64, le=20000),
    height_px: int = Form(default=1080, ge=64, le=20000),
    dpi: int = Form(default=150, ge=72, le=600),
    gap: float = Form(default=settings.default_gap, ge=0),
    padding: float = Form(default=settings.default_padding, ge=0),
    column_count: Optional[int] = Form(default=None, ge=1),
    tight: bool = Form(default=False),
    background_color: str = Form(default="#FFFFFF"),
    output_format: OutputFormat = Form(default=OutputFormat.JPEG),
):
    """Create a new masonry collage from uploaded images"""
    logger.info(f"Incoming collage request: {len(files)} files - canvas={width_px}x{height_px}px, dpi={dpi}, gap={gap}, padding={padding}, columns={column_count or 'auto'}, tight={tight}, format={output_format.value}")

    if len(files) < 2:
        logger.warning("Collage creation failed: insufficient files")
        raise HTTPException(status_code=400, detail="At least 2 images required")
    if len(files) > MAX_COLLAGE_IMAGES:
        logger.warning("Collage creation failed: too many files")
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_COLLAGE_IMAGES} images allowed")

    try:
        render_config = RenderConfig(
            width_px=width_px,
            height_px=height_px,
            dpi=dpi,
            background_color=background_color,
            output_format=output_format,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if width_px * height_px > MAX_CANVAS_PIXELS:
        raise HTTPException(status_code=400, detail="Canvas too large")
    if tight:
        gap, padding = 0.0, 0.0

    job_id = str(uuid.uuid4())
    images: List[Dict] = []
    total_size = 0

    try:
        for index, file in enumerate(files):
            safe_filename = sanitize_filename(file.filename or "image.jpg")

            # Stream file to temp storage in chunks
            file_path = TEMP_DIR / f"{job_id}_{index}_{safe_filename}"
            bytes_written = 0
            async with aiofiles.open(file_path, 'wb') as out_f:
                while True:
                    chunk = await file.read(STREAM_CHUNK_SIZE)
                    if not chunk:
                        break
                    bytes_written += len(chunk)
                    total_size += len(chunk)

                    if bytes_written > MAX_IMAGE_SIZE:
                        logger.warning(f"File {safe_filename} exceeds size limit")
                        raise HTTPException(status_code=400, detail=f"File {safe_filename} exceeds {MAX_IMAGE_SIZE // (1024 * 1024)}MB limit")
                    if total_size > MAX_TOTAL_SIZE:
                        logger.warning("Total file size exceeds limit")
                        raise HTTPException(status_code=400, detail=f"Total file size exceeds {MAX_TOTAL_SIZE // (1024 * 1024)}MB limit")

                    await out_f.write(chunk)

            if not validate_image_file(str(file_path)):
                logger.warning(f"Invalid image file: {safe_filename}")
                raise HTTPException(status_code=400, detail=f"File {safe_filename} is not a valid image")

            try:
                aspect_ratio = read_aspect_ratio(str(file_path))
            except (OSError, ValueError):
                raise HTTPException(status_code=400, detail=f"Failed to process {safe_filename}")

            images.append({"id": str(index), "path": str(file_path), "aspect_ratio": aspect_ratio})

        # Solved here so bad spacing is rejected before queueing; the worker renders this layout
        layout_request = MasonryLayoutRequest(
            canvas_width=width_px,
            canvas_height=height_px,
            images=[MasonryImage(id=img["id"], aspect_ratio=img["aspect_ratio"]) for img in images],
            gap=gap,
            padding=padding,
            column_count=column_count,
        )
        try:
            with LAYOUT_SOLVE_LATENCY.time():
                layout = solve(layout_request)
        except LayoutError as e:
            raise HTTPException(status_code=422, detail=str(e))
    except HTTPException:
        _discard_uploads(job_id)
        raise

    job = CollageJob(
        job_id=job_id,
        status=JobStatus.PENDING,
        created_at=datetime.now(),
        progress=0,
        image_count=len(images),
    )
    await save_job(job)
    logger.info(f"Collage job {job_id} created with {len(images)} images")

    config_payload = {
        "width_px": render_config.width_px,
        "height_px": render_config.height_px,
        "dpi": render_config.dpi,
        "gap": gap,
        "padding": padding,
        "column_count": column_count,
        "background_color": render_config.background_color,
        "output_format": render_config.output_format.value,
        "layout": layout.model_dump(),
    }
    celery_app.send_task(
        "tasks.render_collage_task",
        args=[job_id, images, config_payload],
    )

    return CreateCollageResponse(job_id=job_id, status="pending", message="Collage generation started")

@app.get("/api/collage/status/{job_id}", response_model=CollageJobPublic)
async def get_status(job_id: str):
    """Get the status of a collage generation job"""
    job = await get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_public(job)

@app.get("/api/collage/download/{job_id}")
async def download_collage(job_id: str):
    """Download the generated collage"""
    job = await get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    if job.get('status') != JobStatus.COMPLETED.value:
        raise HTTPException(status_code=400, detail="Collage not ready yet")

    file_path = OUTPUT_DIR / job['output_file']
    if not file_path.exists():
        raise HTTPException(status_code=404, detail="Output file not found")

    file_extension = file_path.suffix.lower()
    if file_extension == '.png':
        media_type = 'image/png'
    elif file_extension == '.webp':
        media_type = 'image/webp'
    else:
        media_type = 'image/jpeg'

    # Weak ETag from file mtime and size
    stat = file_path.stat()
    etag_src = f"{stat.st_mtime_ns}-{stat.st_size}".encode()
    etag = hashlib.md5(etag_src).hexdigest()  # nosec - not for security, only caching tag

    resp = FileResponse(
        path=file_path,
        media_type=media_type,
        filename=job['output_file']
    )
    resp.headers['Content-Disposition'] = f"attachment; filename=\"{job['output_file']}\""
    resp.headers['ETag'] = f"W/\"{etag}\""
    resp.headers['Cache-Control'] = 'private, max-age=31536000, immutable'
    return resp

@app.get("/api/collage/jobs", response_model=List[CollageJobPublic])
async def list_jobs():
    """List all collage generation jobs"""
    jobs = await list_all_jobs()
    return [_job_public(job) for job in jobs]

@app.delete("/api/collage/cleanup/{job_id}", response_model=CleanupResponse)
async def cleanup_job(job_id: str):
    """Clean up files for a job"""
    job = await get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")

    _discard_uploads(job_id)
    if job.get('output_file'):
        (OUTPUT_DIR / job['output_file']).unlink(missing_ok=True)

    await delete_job(job_id)
    return CleanupResponse(message="Job cleaned up successfully")

def _log_json(event: str, **kwargs):
    try:
        record = {"event": event, **kwargs}
        logger.info(json.dumps(record, default=str))
    except (TypeError, ValueError):
        logger.info(f"{event} | {kwargs}")


# Request logging + Request ID middleware
@app.middleware("http")
async def log_requests(request, call_next):
    req_id = request.headers.get("X-Request-ID") or request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    request.state.request_id = req_id

    client_ip = request.client.host if request.client else "unknown"

    if not check_rate_limit(client_ip):
        _log_json(
            "rate_limit_exceeded",
            request_id=req_id,
            method=request.method,
            path=request.url.path,
            client_ip=client_ip,
        )
        return JSONResponse(
            status_code=429,
            content={"error": "Rate limit exceeded. Please try again later.", "request_id": req_id}
        )

    start_time = datetime.now()
    _log_json(
        "request_start",
        request_id=req_id,
        method=request.method,
        path=request.url.path,
        client_ip=client_ip,
    )

    response = await call_next(request)
    elapsed = (datetime.now() - start_time).total_seconds()

    response.headers["X-Request-ID"] = req_id
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Cross-Origin-Opener-Policy"] = "same-origin"
    response.headers["Cross-Origin-Resource-Policy"] = "same-site"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' data:; style-src 'self' 'unsafe-inline'; script-src 'self' 'unsafe-inline'"

    _log_json(
        "request_end",
        request_id=req_id,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(elapsed * 1000, 2),
        client_ip=client_ip,
    )

    REQUEST_COUNT.labels(method=request.method, path=request.url.path, status=response.status_code).inc()
    REQUEST_LATENCY.labels(method=request.method, path=request.url.path).observe(elapsed)

    return response


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    try:
        jobs = await list_all_jobs()
        TOTAL_JOBS.set(len(jobs))
        ACTIVE_JOBS.set(sum(1 for j in jobs if j.get('status') in [JobStatus.PENDING.value, JobStatus.PROCESSING.value]))
    except Exception as e:
        # Redis unavailable: keep previous gauge values
        logger.warning(f"Could not refresh job gauges: {e}")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

# Health check
@app.get("/health")
async def health_check():
    """Comprehensive health check endpoint"""
    try:
        temp_space = shutil.disk_usage(TEMP_DIR)
        output_space = shutil.disk_usage(OUTPUT_DIR)
        active_jobs = await count_active_jobs()

        health_status = {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "version": settings.app_version,
            "checks": {
                "filesystem": {
                    "temp_dir": str(TEMP_DIR),
                    "temp_space_gb": temp_space.free / (1024**3),
                    "output_dir": str(OUTPUT_DIR),
                    "output_space_gb": output_space.free / (1024**3),
                    "healthy": temp_space.free > 1024**3 and output_space.free > 1024**3  # 1GB free
                },
                "jobs": {
                    "active_jobs": active_jobs,
                    "healthy": active_jobs < 50
                },
                "dependencies": {
                    "redis_connected": await is_redis_connected(),
                    "healthy": True
                }
            }
        }

        all_checks_healthy = all(
            check.get("healthy", False)
            for check in health_status["checks"].values()
        )
        if not all_checks_healthy:
            health_status["status"] = "unhealthy"
            logger.warning("Health check failed", extra={"health": health_status})

        return health_status

    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return {
            "status": "unhealthy",
            "timestamp": datetime.now().isoformat(),
            "error": str(e)
        }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
