"""FastAPI app entrypoint for cua-orchestrator."""

from __future__ import annotations

from contextlib import asynccontextmanager
from functools import partial
from typing import Any

from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from cua_orchestrator.config.settings import Settings, get_settings
from cua_orchestrator.executor.batch import BatchExecutor, BatchStatusView
from cua_orchestrator.executor.lifecycle import RESUMABLE_TASK_STATUSES, InvalidTransitionError
from cua_orchestrator.executor.task_runner import TaskRunner
from cua_orchestrator.memory.store import MemoryStore
from cua_orchestrator.providers.browser import BrowserProvider, HttpBrowserProvider
from cua_orchestrator.providers.model import AnthropicModelProvider, ModelProvider
from cua_orchestrator.storage.base import OrchestratorStorage
from cua_orchestrator.storage.models import BatchRecord, NewTask, TaskRecord
from cua_orchestrator.storage.postgres import PostgresStorage
from cua_orchestrator.webhook.dispatcher import deliver


class TaskInput(BaseModel):
    user_message: str = Field(min_length=1)
    destroy_browser_on_completion: bool = False
    config_overrides: dict[str, Any] = Field(default_factory=dict)


class ExecuteBatchRequest(BaseModel):
    tasks: list[TaskInput] = Field(min_length=1)
    config_overrides: dict[str, Any] = Field(default_factory=dict)
    webhook_url: str | None = None
    webhook_secret: str | None = None


class ExecuteBatchResponse(BaseModel):
    batch_id: str
    session_id: str
    task_ids: list[str]
    status: str


class ResumeTaskRequest(BaseModel):
    message: str = Field(min_length=1)


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: OrchestratorStorage | None,
    model_override: ModelProvider | None,
    browser_override: BrowserProvider | None,
) -> None:
    if not hasattr(app.state, "storage"):
        database_url = settings.resolved_database_url()
        if storage_override is None and not database_url:
            raise RuntimeError(
                "Missing database URL. Set CUA_ORCHESTRATOR_DATABASE_URL "
                "or ORCHESTRATOR_DATABASE_URL before starting the app."
            )
        app.state.storage = storage_override or PostgresStorage(database_url)
        app.state.storage.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "executor"):
        model_provider = model_override or AnthropicModelProvider(
            api_key=settings.resolved_anthropic_api_key(),
            base_url=settings.anthropic_base_url,
            api_version=settings.anthropic_version,
            timeout_s=settings.anthropic_timeout_s,
            max_retries=settings.anthropic_max_retries,
            backoff_s=settings.anthropic_backoff_s,
        )
        browser_provider = browser_override or HttpBrowserProvider(
            base_url=settings.browser_base_url,
            api_key=settings.browser_api_key,
            timeout_s=settings.browser_timeout_s,
        )
        runner = TaskRunner(
            storage=app.state.storage,
            model_provider=model_provider,
            browser_provider=browser_provider,
            notify=partial(deliver, timeout_s=settings.webhook_timeout_s),
        )
        app.state.executor = BatchExecutor(
            storage=app.state.storage,
            browser_provider=browser_provider,
            task_runner=runner,
            defaults=settings.execution_defaults(),
        )


def create_app(
    *,
    storage: OrchestratorStorage | None = None,
    settings_override: Settings | None = None,
    model_provider: ModelProvider | None = None,
    browser_provider: BrowserProvider | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    runtime_overrides = {
        "storage_override": storage,
        "model_override": model_provider,
        "browser_override": browser_provider,
    }

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, settings=settings, **runtime_overrides)
        yield

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure_runtime_state(app, settings=settings, **runtime_overrides)

    def _get_executor(request: Request) -> BatchExecutor:
        if not hasattr(request.app.state, "executor"):
            _ensure_runtime_state(request.app, settings=settings, **runtime_overrides)
        return request.app.state.executor

    def _get_storage(request: Request) -> OrchestratorStorage:
        return _get_executor(request).storage

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/tasks/execute", response_model=ExecuteBatchResponse, status_code=202)
    def execute_tasks(
        payload: ExecuteBatchRequest, request: Request, background_tasks: BackgroundTasks
    ) -> ExecuteBatchResponse:
        executor = _get_executor(request)
        batch, tasks = executor.create(
            [
                NewTask(
                    user_message=task.user_message,
                    destroy_browser_on_completion=task.destroy_browser_on_completion,
                    config_overrides=task.config_overrides,
                )
                for task in payload.tasks
            ],
            config_overrides=payload.config_overrides,
            webhook_url=payload.webhook_url,
            webhook_secret=payload.webhook_secret,
        )
        background_tasks.add_task(executor.execute, batch.batch_id)
        return ExecuteBatchResponse(
            batch_id=batch.batch_id,
            session_id=batch.session_id,
            task_ids=[task.task_id for task in tasks],
            status=batch.status,
        )

    @app.get("/batch-executions/{batch_id}/status", response_model=BatchStatusView)
    def batch_status(batch_id: str, request: Request) -> BatchStatusView:
        view = _get_executor(request).describe_batch(batch_id)
        if view is None:
            raise HTTPException(status_code=404, detail="Batch execution not found")
        return view

    @app.post("/batch-executions/{batch_id}/stop", response_model=BatchRecord)
    def stop_batch(batch_id: str, request: Request) -> BatchRecord:
        executor = _get_executor(request)
        if executor.storage.get_batch(batch_id) is None:
            raise HTTPException(status_code=404, detail="Batch execution not found")
        try:
            return executor.stop_batch(batch_id)
        except InvalidTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.get("/tasks/{task_id}", response_model=TaskRecord)
    def get_task(task_id: str, request: Request) -> TaskRecord:
        record = _get_storage(request).get_task(task_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return record

    @app.post("/tasks/{task_id}/stop", response_model=TaskRecord)
    def stop_task(task_id: str, request: Request) -> TaskRecord:
        executor = _get_executor(request)
        if executor.storage.get_task(task_id) is None:
            raise HTTPException(status_code=404, detail="Task not found")
        try:
            return executor.stop_task(task_id)
        except InvalidTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.post("/tasks/{task_id}/messages", response_model=TaskRecord, status_code=202)
    def resume_task(
        task_id: str,
        payload: ResumeTaskRequest,
        request: Request,
        background_tasks: BackgroundTasks,
    ) -> TaskRecord:
        executor = _get_executor(request)
        record = executor.storage.get_task(task_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Task not found")
        if record.status not in RESUMABLE_TASK_STATUSES:
            raise HTTPException(
                status_code=409, detail=f"Task is {record.status} and cannot be resumed"
            )
        if not executor.resume_handle(record):
            raise HTTPException(
                status_code=409, detail="Task has no live browser session to resume on"
            )
        background_tasks.add_task(executor.resume_task, task_id, payload.message)
        return record

    @app.get("/memory")
    def list_memory(request: Request) -> dict[str, list[str]]:
        return {"paths": MemoryStore(_get_storage(request)).list_paths()}

    return app


app = create_app()
