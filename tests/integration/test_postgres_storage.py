from __future__ import annotations

import threading
import uuid

import pytest

from cua_orchestrator.executor.batch import BatchExecutor
from cua_orchestrator.executor.task_runner import TaskRunner
from cua_orchestrator.memory.store import MemoryAlreadyExistsError, MemoryStore
from cua_orchestrator.storage.base import CounterLimitError
from cua_orchestrator.storage.models import NewTask


def test_counters_are_atomic_and_capped(postgres_storage) -> None:
    session_id = postgres_storage.create_session()
    batch = postgres_storage.create_batch(session_id=session_id, task_count=20)

    threads = [
        threading.Thread(
            target=postgres_storage.increment_batch_counter, args=(batch.batch_id, "completed")
        )
        for _ in range(20)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert postgres_storage.get_batch(batch.batch_id).completed_count == 20
    with pytest.raises(CounterLimitError):
        postgres_storage.increment_batch_counter(batch.batch_id, "failed")


def test_memory_commands_round_trip_through_postgres(postgres_storage) -> None:
    store = MemoryStore(postgres_storage)
    prefix = uuid.uuid4().hex
    store.create(f"/memories/{prefix}/a.md", "alpha\nbeta")
    store.create(f"/memories/{prefix}/b.md", "gamma")

    store.str_replace(f"{prefix}/a.md", "beta", "delta")
    with pytest.raises(MemoryAlreadyExistsError):
        store.rename(f"{prefix}/a.md", f"{prefix}/b.md")
    store.rename(f"{prefix}/a.md", f"{prefix}/c.md")

    assert store.view(f"{prefix}/c.md") == "alpha\ndelta"
    assert f"{prefix}/a.md" not in store.list_paths()


def test_batch_runs_against_postgres(postgres_storage, scripted_model, browser, blocks) -> None:
    model = scripted_model(
        [
            [blocks.computer("tu_1", "screenshot")],
            [blocks.report("tu_2", "completed", "done")],
        ]
    )
    runner = TaskRunner(
        storage=postgres_storage,
        model_provider=model,
        browser_provider=browser,
        sleep=lambda _seconds: None,
    )
    executor = BatchExecutor(
        storage=postgres_storage, browser_provider=browser, task_runner=runner
    )
    batch, (task,) = executor.create([NewTask(user_message="Check the dashboard")])

    finished = executor.execute(batch.batch_id)

    assert finished.status == "completed"
    assert finished.completed_count == 1
    exchange = postgres_storage.get_latest_exchange(task.task_id)
    assert exchange.iteration == 2
    assert blocks.screenshot_b64 not in str(
        postgres_storage.list_task_messages(task.task_id)[1].tool_results
    )
