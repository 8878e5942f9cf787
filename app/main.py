import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse

from .action_search import ActionSearch
from .backup import BackupService
from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .db import Database
from .errors import PlannerError, StorageError
from .execution_store import ExecutionStore
from .plan_store import PlanStore
from .schemas import (
    Action,
    ActionItem,
    ActionPlan,
    ActionPlanExecution,
    AddItemRequest,
    CompletionStatus,
    CreatePlanRequest,
    ExecutionList,
    ItemFinishedState,
    RenameRequest,
    ReorderItemsRequest,
    SetItemFinishedRequest,
)

logger = logging.getLogger("uvicorn.error")

BACKUP_FILENAME = "maintenance-planner-backup.json"


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_plan_store(request: Request) -> PlanStore:
    return request.app.state.plan_store


def get_execution_store(request: Request) -> ExecutionStore:
    return request.app.state.execution_store


def get_action_search(request: Request) -> ActionSearch:
    return request.app.state.action_search


def get_backup_service(request: Request) -> BackupService:
    return request.app.state.backup_service


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def build_services(app: FastAPI) -> None:
    """(Re)build the stores from the current settings; they hold no state of their own."""
    settings: AppSettings = app.state.settings
    db: Database = app.state.db
    app.state.plan_store = PlanStore(db)
    app.state.execution_store = ExecutionStore(
        db,
        display_format=settings.timestamp_display_format,
        reopen_window_hours=settings.reopen_window_hours,
    )
    app.state.action_search = ActionSearch(db, default_limit=settings.search_limit)
    app.state.backup_service = BackupService(db)


async def planner_error_handler(request: Request, exc: PlannerError) -> JSONResponse:
    if isinstance(exc, StorageError):
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal storage error."})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


router = APIRouter()


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    payload: Dict[str, Any] = Body(default={}),
    settings: AppSettings = Depends(get_settings),
    config_path: Path = Depends(get_config_path),
):
    # The database is opened once at startup; moving it needs a restart.
    payload = {k: v for k, v in payload.items() if k != "database_path"}
    try:
        new_settings = AppSettings(**{**settings.model_dump(), **payload})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    build_services(request.app)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.get("/api/plans", response_model=List[ActionPlan])
async def list_plans(include_deleted: bool = False, store: PlanStore = Depends(get_plan_store)):
    return await store.list_plans(include_deleted=include_deleted)


@router.post("/api/plans", response_model=ActionPlan, status_code=201)
async def create_plan(payload: CreatePlanRequest, store: PlanStore = Depends(get_plan_store)):
    return await store.create_plan(payload.name, payload.items)


@router.get("/api/plans/{plan_id}", response_model=ActionPlan)
async def get_plan(plan_id: str, store: PlanStore = Depends(get_plan_store)):
    # Deleted plans stay readable so their executions can link back to them.
    return await store.get_plan(plan_id, include_deleted=True)


@router.patch("/api/plans/{plan_id}", response_model=ActionPlan)
async def rename_plan(plan_id: str, payload: RenameRequest, store: PlanStore = Depends(get_plan_store)):
    return await store.rename_plan(plan_id, payload.name)


@router.delete("/api/plans/{plan_id}", response_model=ActionPlan)
async def delete_plan(plan_id: str, store: PlanStore = Depends(get_plan_store)):
    return await store.delete_plan(plan_id)


@router.post("/api/plans/{plan_id}/items", response_model=ActionItem, status_code=201)
async def add_item(plan_id: str, payload: AddItemRequest, store: PlanStore = Depends(get_plan_store)):
    return await store.add_item(
        plan_id,
        action_id=payload.action_id,
        action_name=payload.action_name,
        position=payload.position,
    )


@router.put("/api/plans/{plan_id}/items/order", response_model=List[ActionItem])
async def reorder_items(plan_id: str, payload: ReorderItemsRequest, store: PlanStore = Depends(get_plan_store)):
    return await store.reorder_items(plan_id, payload.item_ids)


@router.delete("/api/items/{item_id}")
async def remove_item(item_id: str, store: PlanStore = Depends(get_plan_store)):
    await store.remove_item(item_id)
    return {"ok": True}


@router.get("/api/actions", response_model=List[Action])
async def list_actions(store: PlanStore = Depends(get_plan_store)):
    return await store.list_actions()


@router.get("/api/actions/search", response_model=List[Action])
async def search_actions(
    q: Optional[str] = None,
    limit: Optional[int] = None,
    search: ActionSearch = Depends(get_action_search),
):
    return await search.search(q, limit=limit)


@router.get("/api/actions/{action_id}", response_model=Action)
async def get_action(action_id: str, store: PlanStore = Depends(get_plan_store)):
    return await store.get_action(action_id)


@router.patch("/api/actions/{action_id}", response_model=Action)
async def rename_action(action_id: str, payload: RenameRequest, store: PlanStore = Depends(get_plan_store)):
    return await store.rename_action(action_id, payload.name)


@router.delete("/api/actions/{action_id}")
async def delete_action(action_id: str, store: PlanStore = Depends(get_plan_store)):
    await store.delete_action(action_id)
    return {"ok": True}


@router.post("/api/plans/{plan_id}/executions", response_model=ActionPlanExecution, status_code=201)
async def start_execution(plan_id: str, store: ExecutionStore = Depends(get_execution_store)):
    return await store.start_execution(plan_id)


@router.get("/api/executions", response_model=ExecutionList)
async def list_executions(store: ExecutionStore = Depends(get_execution_store)):
    return await store.list_executions()


@router.get("/api/executions/{execution_id}", response_model=ActionPlanExecution)
async def get_execution(execution_id: str, store: ExecutionStore = Depends(get_execution_store)):
    return await store.get_execution(execution_id)


@router.get("/api/executions/{execution_id}/status", response_model=CompletionStatus)
async def completion_status(execution_id: str, store: ExecutionStore = Depends(get_execution_store)):
    return await store.completion_status(execution_id)


@router.post("/api/executions/{execution_id}/finish", response_model=ActionPlanExecution)
async def finish_execution(execution_id: str, store: ExecutionStore = Depends(get_execution_store)):
    return await store.finish_execution(execution_id)


@router.post("/api/executions/{execution_id}/reopen", response_model=ActionPlanExecution)
async def reopen_execution(execution_id: str, store: ExecutionStore = Depends(get_execution_store)):
    return await store.reopen_execution(execution_id)


@router.delete("/api/executions/{execution_id}")
async def delete_execution(execution_id: str, store: ExecutionStore = Depends(get_execution_store)):
    await store.delete_execution(execution_id)
    return {"ok": True}


@router.post("/api/execution-items/{item_id}/finished", response_model=ItemFinishedState)
async def set_item_finished(
    item_id: str,
    payload: SetItemFinishedRequest,
    store: ExecutionStore = Depends(get_execution_store),
):
    return await store.set_item_finished(item_id, payload.finished)


@router.get("/api/backup")
async def export_backup(service: BackupService = Depends(get_backup_service)):
    backup = await service.export_backup()
    return JSONResponse(
        content=backup.model_dump(mode="json"),
        headers={"Content-Disposition": f'attachment; filename="{BACKUP_FILENAME}"'},
    )


@router.post("/api/backup")
async def import_backup(
    payload: Dict[str, Any] = Body(...),
    service: BackupService = Depends(get_backup_service),
):
    restored = await service.import_backup(payload)
    return {"ok": True, **restored}


@router.post("/api/backup/upload")
async def import_backup_upload(
    backup_file: UploadFile = File(...),
    service: BackupService = Depends(get_backup_service),
):
    data = await backup_file.read()
    if not data:
        raise HTTPException(status_code=400, detail="No backup file selected.")
    restored = await service.import_backup(data)
    return {"ok": True, **restored}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db_path = Path(app.state.settings.database_path)
        if db_path.parent and not db_path.parent.exists():
            db_path.parent.mkdir(parents=True, exist_ok=True)
        await app.state.db.init()
        logger.info("Maintenance planner database ready at %s", db_path)
        yield

    app = FastAPI(title="Maintenance Planner", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.config_path = config_path or CONFIG_PATH
    build_services(app)

    app.add_exception_handler(PlannerError, planner_error_handler)
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("PLANNER_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "app.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        pass
