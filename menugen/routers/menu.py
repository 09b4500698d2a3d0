# menugen/routers/menu.py
from fastapi import APIRouter, UploadFile, File, Depends, HTTPException, Request, status, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from typing import Any, Dict, List
import logging

from menugen.container import ServiceContainer
from menugen.core.errors import MenuGenError, MenuNotFoundError, UploadValidationError
from menugen.core.store import MenuStore
from menugen.models.menu import (
    DishResponse,
    ErrorResponse,
    MenuProgress,
    MenuSectionResponse,
    MenuStatus,
    MenuStatusResponse,
    MenuStructureResponse,
    MenuUploadResponse,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def _error(status_code: int, error: MenuGenError) -> HTTPException:
    return HTTPException(status_code=status_code, detail=error.to_dict())


def _dish_response(dish: Dict[str, Any]) -> DishResponse:
    return DishResponse(
        id=dish["id"],
        section_id=dish.get("section_id"),
        name=dish["name"],
        price_cents=dish.get("price_cents"),
        currency=dish.get("currency") or "USD",
        raw_price_string=dish.get("raw_price_string"),
        description=dish.get("description"),
        image_url=dish.get("image_url"),
        status=dish["status"],
        failure_reason=dish.get("failure_reason"),
        position=dish["position"],
    )


async def build_menu_structure(store: MenuStore, menu: Dict[str, Any]) -> MenuStructureResponse:
    """Sections in display order, each with its dishes in display order"""
    sections = await store.list_sections(menu["id"])
    dishes = await store.list_dishes(menu["id"])

    by_section: Dict[str, List[DishResponse]] = {s["id"]: [] for s in sections}
    ungrouped: List[DishResponse] = []
    for dish in sorted(dishes, key=lambda d: d["position"]):
        target = by_section.get(dish.get("section_id"))
        (target if target is not None else ungrouped).append(_dish_response(dish))

    return MenuStructureResponse(
        id=menu["id"],
        status=menu["status"],
        currency=menu.get("currency") or "USD",
        sections=[
            MenuSectionResponse(
                id=section["id"],
                name=section["name"],
                position=section["position"],
                dishes=by_section[section["id"]],
            )
            for section in sorted(sections, key=lambda s: s["position"])
        ],
        ungrouped_dishes=ungrouped,
    )


@router.post("", response_model=MenuUploadResponse, status_code=status.HTTP_202_ACCEPTED)
async def upload_menu(
    image: UploadFile = File(...),
    container: ServiceContainer = Depends(get_container)
):
    """Upload a menu image; processing continues in the background"""
    contents = await image.read()

    try:
        result = await container.ingestion.ingest(
            contents,
            content_type=image.content_type,
            size=image.size,
            filename=image.filename,
        )
    except UploadValidationError as e:
        raise _error(status.HTTP_400_BAD_REQUEST, e)
    except MenuGenError as e:
        logger.error(f"Failed to create menu for upload {image.filename}: {e.message}")
        raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, e)

    payload = MenuUploadResponse(menu_id=result.menu_id, status=result.status)
    if not result.created:
        return JSONResponse(status_code=status.HTTP_200_OK, content=payload.model_dump())
    return payload


@router.get("/progress/{menu_id}")
async def get_menu_progress(
    menu_id: str,
    container: ServiceContainer = Depends(get_container)
):
    """Get current dish counters for a menu"""
    progress = await container.tracker.get_progress(menu_id)
    if progress:
        return progress

    menu = await container.store.get_menu(menu_id)
    if not menu:
        raise _error(status.HTTP_404_NOT_FOUND, MenuNotFoundError(f"Menu {menu_id} not found"))

    total = menu["total_dishes"]
    return {
        "menu_id": menu_id,
        "status": menu["status"],
        "processed_dishes": menu["processed_dishes"],
        "total_dishes": total,
        "progress": round(menu["processed_dishes"] / total * 100) if total else 0,
    }


@router.get("/{menu_id}", response_model=MenuStatusResponse, response_model_exclude_none=True)
async def get_menu(
    menu_id: str,
    container: ServiceContainer = Depends(get_container)
):
    """Poll a menu's status; includes the full structure once COMPLETE"""
    menu = await container.store.get_menu(menu_id)
    if not menu:
        raise _error(status.HTTP_404_NOT_FOUND, MenuNotFoundError(f"Menu {menu_id} not found"))

    response = MenuStatusResponse(menu_id=menu["id"], status=menu["status"])

    if menu["status"] in (MenuStatus.PROCESSING.value, MenuStatus.COMPLETE.value):
        response.progress = MenuProgress(
            processed_dishes=menu["processed_dishes"],
            total_dishes=menu["total_dishes"],
        )

    if menu["status"] == MenuStatus.COMPLETE.value:
        response.menu = await build_menu_structure(container.store, menu)

    if menu["status"] == MenuStatus.FAILED.value:
        response.error = ErrorResponse(
            code=menu.get("failure_code") or "PROCESSING_FAILED",
            message=menu.get("failure_reason") or "Menu processing failed",
        )

    return response


@router.delete("/{menu_id}/processing", response_model=MenuUploadResponse)
async def cancel_menu_processing(
    menu_id: str,
    container: ServiceContainer = Depends(get_container)
):
    """Abort an in-flight pipeline; unfinished dishes are marked FAILED"""
    menu = await container.store.get_menu(menu_id)
    if not menu:
        raise _error(status.HTTP_404_NOT_FOUND, MenuNotFoundError(f"Menu {menu_id} not found"))

    if not await container.supervisor.cancel(menu_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "NOT_PROCESSING", "message": f"Menu {menu_id} is not being processed"}
        )

    menu = await container.store.get_menu(menu_id)
    logger.info(f"Cancelled processing of menu {menu_id}")
    return MenuUploadResponse(menu_id=menu_id, status=menu["status"])


@router.websocket("/ws/progress/{menu_id}")
async def websocket_progress(websocket: WebSocket, menu_id: str):
    """WebSocket endpoint for real-time progress updates"""
    container: ServiceContainer = websocket.app.state.container
    tracker = container.tracker
    await websocket.accept()
    logger.info(f"WebSocket connection established for menu {menu_id}")

    async def send_progress(data: Dict[str, Any]):
        try:
            await websocket.send_json(data)
        except Exception as e:
            logger.error(f"Error sending WebSocket message: {e}")

    try:
        # The current snapshot, if any, is the first message delivered
        await tracker.subscribe(menu_id, send_progress)

        # Keep connection alive
        while True:
            try:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text("pong")
            except WebSocketDisconnect:
                break

    finally:
        await tracker.unsubscribe(menu_id, send_progress)
        logger.info(f"WebSocket connection closed for menu {menu_id}")
