from __future__ import annotations

from typing import List, Dict
from datetime import datetime
from pathlib import Path
import json
import logging

from celery import shared_task
from redis import Redis as SyncRedis

from config import AppSettings
from masonry import MasonryImage, MasonryLayoutRequest, MasonryLayoutResult, solve
from renderer import CollageRenderer, OutputFormat, RenderConfig, blocks_from_layout


settings = AppSettings()
logger = logging.getLogger(__name__)


def _job_key(job_id: str) -> str:
    return f"job:{job_id}"


def _get_sync_redis() -> SyncRedis:
    if settings.redis_url:
        return SyncRedis.from_url(settings.redis_url, decode_responses=True)
    return SyncRedis(host=settings.redis_host, port=settings.redis_port, db=settings.redis_db, decode_responses=True)


def _update_job_sync(job_id: str, updates: Dict) -> None:
    client = _get_sync_redis()
    raw = client.get(_job_key(job_id))
    data = json.loads(raw) if raw else {"job_id": job_id, "status": "pending", "created_at": datetime.now().isoformat(), "progress": 0}
    data.update(updates)
    client.set(_job_key(job_id), json.dumps(data), ex=settings.job_ttl_seconds)


def build_layout_request(images: List[Dict], config_data: Dict) -> MasonryLayoutRequest:
    """Rebuild the layout request from the JSON-safe payload sent by the API."""
    column_count = config_data.get("column_count")
    return MasonryLayoutRequest(
        canvas_width=float(config_data.get("width_px")),
        canvas_height=float(config_data.get("height_px")),
        images=[MasonryImage(id=str(img["id"]), aspect_ratio=float(img["aspect_ratio"])) for img in images],
        gap=float(config_data.get("gap")),
        padding=float(config_data.get("padding")),
        column_count=int(column_count) if column_count is not None else None,
    )


@shared_task(name="tasks.render_collage_task")
def render_collage_task(job_id: str, images: List[Dict], config_data: Dict) -> str:
    """Celery task: lay out and render a collage, updating the job in Redis (sync).

    `images` holds {"id", "path", "aspect_ratio"} per uploaded file. When
    `config_data` carries the layout the API already solved it is rendered as is,
    otherwise the layout is solved here.
    """
    try:
        _update_job_sync(job_id, {"status": "processing", "progress": 10})

        config = RenderConfig(
            width_px=int(config_data.get("width_px")),
            height_px=int(config_data.get("height_px")),
            dpi=int(config_data.get("dpi")),
            background_color=str(config_data.get("background_color")),
            output_format=OutputFormat(config_data.get("output_format")),
        )
        renderer = CollageRenderer(config, max_canvas_pixels=settings.max_canvas_pixels)

        if config_data.get("layout"):
            layout = MasonryLayoutResult.model_validate(config_data["layout"])
        else:
            layout = solve(build_layout_request(images, config_data))
        _update_job_sync(job_id, {
            "progress": 50,
            "column_count": layout.actual_column_count,
            "fill_rate": layout.fill_rate,
        })

        blocks = blocks_from_layout(layout, {str(img["id"]): img["path"] for img in images})
        output_filename = f"collage_{job_id}.{config.output_format.value}"
        output_path = Path(settings.output_dir) / output_filename
        renderer.generate(blocks, str(output_path))

        _update_job_sync(job_id, {
            "status": "completed",
            "completed_at": datetime.now().isoformat(),
            "output_file": output_filename,
            "progress": 100,
        })
        logger.info(f"Collage job {job_id} rendered with {len(blocks)} images in {layout.actual_column_count} columns")

        return output_filename
    except Exception as exc:
        _update_job_sync(job_id, {"status": "failed", "error_message": str(exc), "progress": 0})
        raise
