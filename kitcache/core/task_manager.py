"""
Background task bookkeeping for kitcache.

Refetches, reconcile passes and periodic cleanup all run as asyncio tasks that
must be cancellable by the component that started them and must not outlive
that component's shutdown. ``TaskManager`` tracks them, and ``ManagedObject``
gives a component its own manager.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

from loguru import logger


class TaskManager:
    """Tracks background tasks so they can be cancelled and awaited on shutdown."""

    def __init__(self, name: str = "TaskManager") -> None:
        self.name = name
        self.tasks: set[asyncio.Task[Any]] = set()
        self._shutdown_requested = False

    def create_task(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a background task."""
        if self._shutdown_requested:
            coro.close()
            raise RuntimeError("Cannot create tasks after shutdown requested")

        task = asyncio.create_task(coro, name=name)
        self.tasks.add(task)
        task.add_done_callback(self._task_completed)

        logger.debug(f"[{self.name}] Created task {task.get_name()}")
        return task

    def _task_completed(self, task: asyncio.Task[Any]) -> None:
        self.tasks.discard(task)

        if task.cancelled():
            logger.debug(f"[{self.name}] Task {task.get_name()} was cancelled")
        elif task.exception():
            logger.error(
                f"[{self.name}] Task {task.get_name()} failed: {task.exception()}"
            )

    def cancel(self, task: asyncio.Task[Any] | None) -> bool:
        """Cancel ``task`` if it is still pending. Safe to call repeatedly."""
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def drain(self) -> None:
        """Wait until every currently tracked task has finished."""
        while self.tasks:
            pending = [task for task in self.tasks if not task.done()]
            if not pending:
                break
            await asyncio.wait(pending)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel all managed tasks and wait for them to finish."""
        if self._shutdown_requested:
            return

        self._shutdown_requested = True

        if not self.tasks:
            logger.debug(f"[{self.name}] No tasks to shutdown")
            return

        logger.info(f"[{self.name}] Shutting down {len(self.tasks)} background tasks")

        for task in self.tasks:
            if not task.done():
                task.cancel()

        pending_tasks = [task for task in self.tasks if not task.done()]
        if pending_tasks:
            _, pending = await asyncio.wait(pending_tasks, timeout=timeout)
            for task in pending:
                logger.warning(f"[{self.name}] Task did not stop: {task.get_name()}")

        self.tasks.clear()
        logger.debug(f"[{self.name}] Task shutdown complete")

    def __len__(self) -> int:
        return len(self.tasks)


class ManagedObject:
    """Base class for components that own background tasks."""

    def __init__(self, name: str | None = None) -> None:
        self._task_manager = TaskManager(name or self.__class__.__name__)

    def create_task(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create a managed background task."""
        return self._task_manager.create_task(coro, name)

    async def drain(self) -> None:
        """Wait for every background task started so far."""
        await self._task_manager.drain()

    async def shutdown(self) -> None:
        """Shutdown the object and all its background tasks."""
        await self._task_manager.shutdown()
