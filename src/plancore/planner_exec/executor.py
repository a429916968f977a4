"""
ToolExecutor: runs the actions a planner emits against registered tools.

- Single tool calls and parallel batches (bounded by the action's concurrency)
- Sync tools run on the shared I/O pool, async tools are awaited
- Per-tool timeouts and retries with exponential backoff for idempotent tools
- Failures never escape: they come back as `error` results or as failed
  entries of an aggregated `tool_results`
"""
from __future__ import annotations
import asyncio
import logging
import time
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, Iterable, List, Optional

from .actions import (
    Action,
    ActionResult,
    ActionType,
    ParallelToolsAction,
    ToolCallAction,
    ToolCallOutcome,
    ToolInvocation,
)
from .tool_spec import ToolSpec
from ..concurrency import run_io

logger = logging.getLogger(__name__)


class ExecutionError(Exception):
    """Raised when a tool invocation fails after all attempts."""
    pass


class ToolExecutor:
    """
    Executes planner actions against a set of ToolSpecs.

    Example:
        ```python
        executor = ToolExecutor([search, fetch_issue])
        result = await executor.execute(thought.action)
        ```
    """

    def __init__(
        self,
        tools: Iterable[ToolSpec] = (),
        max_retries: int = 2,
        default_timeout: Optional[float] = 60.0,
        backoff_base: float = 0.5,
        enable_tracing: bool = True,
        trace_limit: int = 1000,
    ):
        """
        Args:
            tools: ToolSpecs available to the planner
            max_retries: Extra attempts for idempotent tools
            default_timeout: Timeout in seconds when a tool does not set one
            backoff_base: First retry delay in seconds, doubled per attempt
            enable_tracing: Record one trace entry per attempt
            trace_limit: Most recent trace entries kept
        """
        self._tools: Dict[str, ToolSpec] = {}
        for tool in tools:
            self.register(tool)
        self.max_retries = max_retries
        self.default_timeout = default_timeout
        self.backoff_base = backoff_base
        self.enable_tracing = enable_tracing
        self._trace: Deque[Dict[str, Any]] = deque(maxlen=trace_limit)

    def register(self, tool: ToolSpec) -> None:
        if tool.name in self._tools:
            logger.warning(f"Tool {tool.name} registered twice; keeping the latest")
        self._tools[tool.name] = tool

    def tool_metadata(self) -> List[Dict[str, Any]]:
        """Tool descriptions in the shape planners expect in `available_tools`."""
        return [tool.for_llm() for tool in self._tools.values()]

    async def execute(self, action: Action) -> ActionResult:
        if action.type == ActionType.TOOL_CALL:
            return await self._execute_single(action)
        if action.type == ActionType.PARALLEL_TOOLS:
            return await self._execute_parallel(action)
        if action.type == ActionType.FINAL_ANSWER:
            return ActionResult.final_answer(action.content)
        return ActionResult.failure(f"Action {action.type.value} is not executable")

    async def _execute_single(self, action: ToolCallAction) -> ActionResult:
        try:
            output = await self.invoke(action.tool_name, action.arguments, action.step_id)
        except ExecutionError as e:
            return ActionResult.failure(str(e))
        return ActionResult.tool_result(output)

    async def _execute_parallel(self, action: ParallelToolsAction) -> ActionResult:
        semaphore = asyncio.Semaphore(max(1, action.concurrency))

        async def _run(invocation: ToolInvocation) -> ToolCallOutcome:
            async with semaphore:
                output = await self.invoke(invocation.tool_name, invocation.arguments, invocation.step_id)
            return ToolCallOutcome(tool_name=invocation.tool_name, result=output, step_id=invocation.step_id)

        logger.info(f"Executing {len(action.tools)} tool calls (concurrency={action.concurrency})")
        results = await asyncio.gather(*(_run(inv) for inv in action.tools), return_exceptions=True)

        outcomes = []
        for invocation, result in zip(action.tools, results):
            if isinstance(result, BaseException):
                outcomes.append(ToolCallOutcome(
                    tool_name=invocation.tool_name,
                    error=str(result),
                    step_id=invocation.step_id,
                ))
            else:
                outcomes.append(result)
        return ActionResult.tool_results(outcomes)

    async def invoke(self, tool_name: str, arguments: Dict[str, Any], step_id: Optional[str] = None) -> Any:
        """
        Call one tool with retries for idempotent tools.

        Raises:
            ExecutionError: unknown tool, or the last attempt failed or timed out
        """
        tool = self._tools.get(tool_name)
        if tool is None:
            raise ExecutionError(f"Tool not found: {tool_name}")
        if tool.func is None:
            raise ExecutionError(f"Tool {tool_name} has no implementation")

        max_attempts = self.max_retries + 1 if tool.idempotent else 1
        label = step_id or tool_name
        for attempt in range(1, max_attempts + 1):
            start = time.time()
            try:
                output = await self._call_with_timeout(tool, arguments)
                self._trace_call(label, tool, attempt, start, success=True)
                logger.info(f"Tool {tool.name} for {label} succeeded (attempt {attempt}/{max_attempts})")
                return output
            except asyncio.TimeoutError:
                error = f"Tool {tool.name} timed out after {tool.timeout or self.default_timeout}s"
                logger.warning(f"{error} (attempt {attempt}/{max_attempts})")
            except Exception as e:
                error = f"Tool {tool.name} failed: {e}"
                logger.error(f"{error} (attempt {attempt}/{max_attempts})")

            retry = attempt < max_attempts
            self._trace_call(label, tool, attempt, start, success=False, retry=retry, error=error)
            if retry:
                await asyncio.sleep(self.backoff_base * 2 ** (attempt - 1))

        raise ExecutionError(error)

    async def _call_with_timeout(self, tool: ToolSpec, arguments: Dict[str, Any]) -> Any:
        timeout = tool.timeout or self.default_timeout
        if tool.is_async:
            coro = tool.func(**arguments)
        else:
            coro = run_io(tool.func, **arguments)
        if timeout:
            return await asyncio.wait_for(coro, timeout=timeout)
        return await coro

    def _trace_call(
        self,
        label: str,
        tool: ToolSpec,
        attempt: int,
        start: float,
        success: bool,
        retry: bool = False,
        error: Optional[str] = None,
    ) -> None:
        if not self.enable_tracing:
            return
        entry = {
            "step_id": label,
            "tool": tool.name,
            "attempt": attempt,
            "success": success,
            "retry": retry,
            "duration": time.time() - start,
            "timestamp": datetime.now().isoformat(),
        }
        if error:
            entry["error"] = error
        self._trace.append(entry)

    def get_trace(self) -> List[Dict[str, Any]]:
        return list(self._trace)
