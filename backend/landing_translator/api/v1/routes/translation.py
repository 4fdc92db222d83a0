"""Translation API routes: rows, quality convergence and batches."""

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field

from landing_translator.api.dependencies import get_coordinator, get_rows, get_store
from landing_translator.core.exceptions import RowBusyError
from landing_translator.core.orchestration import (
    BatchCoordinator,
    ConvergenceConfig,
    ItemKey,
    ItemStore,
    RowRegistry,
    SideAsset,
)
from landing_translator.models.database.enums import ItemVariant

logger = logging.getLogger(__name__)

router = APIRouter()


class ItemKeyRequest(BaseModel):
    """Identifies one translation row."""
    page_id: str
    language: str
    variant: ItemVariant = ItemVariant.CONTROL

    def key(self) -> ItemKey:
        return ItemKey(self.page_id, self.language, self.variant.value)


class SideAssetRequest(BaseModel):
    """An embedded image to translate with the page."""
    url: str
    aspect_ratio: Optional[str] = None  # e.g. "16:9"


class RunTranslationRequest(ItemKeyRequest):
    """Request to run the quality convergence loop for one row."""
    # Overrides of the configured defaults; None = use settings
    quality_enabled: Optional[bool] = None
    threshold: Optional[float] = Field(default=None, ge=0, le=100)
    max_text_rounds: Optional[int] = Field(default=None, ge=1)
    max_fix_rounds: Optional[int] = Field(default=None, ge=0)
    # Replaces the row's side assets when given
    side_assets: Optional[List[SideAssetRequest]] = None


class BatchRequest(BaseModel):
    """Request to translate one page into many languages."""
    page_id: str
    languages: List[str] = Field(..., min_length=1)
    variant: ItemVariant = ItemVariant.CONTROL


def _build_config(request: RunTranslationRequest, has_side_assets: bool) -> ConvergenceConfig:
    return ConvergenceConfig.from_settings(
        quality_enabled=request.quality_enabled,
        threshold=request.threshold,
        max_text_rounds=request.max_text_rounds,
        max_fix_rounds=request.max_fix_rounds,
        has_side_assets=has_side_assets,
    )


async def _run_in_background(
    operation: Callable[..., Awaitable[Any]], *args: Any
) -> None:
    """Run a row operation after the response was sent."""
    try:
        await operation(*args)
    except RowBusyError as e:
        logger.warning(f"[API] Skipped background operation: {e}")


# =============================================================================
# Batches
# =============================================================================


@router.post("/translations/batch")
async def start_batch(
    request: BatchRequest,
    background_tasks: BackgroundTasks,
    coordinator: BatchCoordinator = Depends(get_coordinator),
):
    """Translate a page into every requested language, one after another."""
    keys = [ItemKey(request.page_id, lang, request.variant.value) for lang in request.languages]
    batch = coordinator.create_batch(keys)
    background_tasks.add_task(coordinator.run_batch, batch)
    logger.info(f"[API] Batch {batch.id} queued for {request.page_id}: {request.languages}")
    return {"batch_id": batch.id, "total": batch.total}


@router.get("/translations/batch/{batch_id}")
async def get_batch(
    batch_id: str,
    coordinator: BatchCoordinator = Depends(get_coordinator),
):
    """Get batch progress."""
    batch = coordinator.get(batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return coordinator.snapshot(batch)


@router.post("/translations/batch/{batch_id}/abort")
async def abort_batch(
    batch_id: str,
    coordinator: BatchCoordinator = Depends(get_coordinator),
):
    """Stop a batch after the item currently running."""
    if coordinator.get(batch_id) is None:
        raise HTTPException(status_code=404, detail="Batch not found")
    return {"aborted": coordinator.abort(batch_id)}


# =============================================================================
# Rows
# =============================================================================


@router.get("/translations/{page_id}")
async def list_translations(
    page_id: str,
    store: ItemStore = Depends(get_store),
) -> List[Dict[str, Any]]:
    """List persisted translation items of a page."""
    items = await store.list_for_page(page_id)
    return [item.model_dump(mode="json") for item in items]


@router.get("/translations/{page_id}/{language}")
async def get_translation(
    page_id: str,
    language: str,
    variant: ItemVariant = ItemVariant.CONTROL,
    rows: RowRegistry = Depends(get_rows),
):
    """Get the live state of one row, including in-flight progress."""
    return await rows.snapshot(ItemKey(page_id, language, variant.value))


@router.post("/translations/run")
async def run_translation(
    request: RunTranslationRequest,
    background_tasks: BackgroundTasks,
    rows: RowRegistry = Depends(get_rows),
):
    """Start translate -> analyze -> fix for one row."""
    row = await rows.get(request.key())
    if row.busy:
        raise HTTPException(status_code=409, detail=f"Row is busy ({row.operation})")

    if request.side_assets is not None:
        row.item.side_assets = [
            SideAsset(url=a.url, aspect_ratio=a.aspect_ratio) for a in request.side_assets
        ]
    config = _build_config(request, has_side_assets=bool(row.item.side_assets))

    background_tasks.add_task(_run_in_background, row.translate, config)
    return {"status": "started", "key": str(row.key)}


@router.post("/translations/improve")
async def improve_translation(
    request: RunTranslationRequest,
    background_tasks: BackgroundTasks,
    rows: RowRegistry = Depends(get_rows),
):
    """Apply suggested corrections to an existing translation."""
    row = await rows.get(request.key())
    if row.busy:
        raise HTTPException(status_code=409, detail=f"Row is busy ({row.operation})")
    if not row.item.id:
        raise HTTPException(status_code=400, detail="Row has not been translated yet")

    config = _build_config(request, has_side_assets=bool(row.item.side_assets))
    background_tasks.add_task(_run_in_background, row.improve, config)
    return {"status": "started", "key": str(row.key)}


@router.post("/translations/cancel")
async def cancel_translation(
    request: ItemKeyRequest,
    rows: RowRegistry = Depends(get_rows),
):
    """Cancel the operation in flight for a row."""
    row = rows.peek(request.key())
    return {"cancelled": row.cancel() if row is not None else False}


@router.post("/translations/close")
async def close_row(
    request: ItemKeyRequest,
    rows: RowRegistry = Depends(get_rows),
):
    """Close a row: cancels its operation and drops it from the batch registry."""
    return {"closed": rows.dispose(request.key())}
