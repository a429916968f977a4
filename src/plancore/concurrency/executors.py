# src/plancore/concurrency/executors.py
from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
import asyncio
import weakref
from typing import Callable, Any

# One shared pool for blocking collaborator calls (LLM requests, sync tools)
_SHARED_POOL = ThreadPoolExecutor(max_workers=8, thread_name_prefix="plancore-io")

_IO_LIMIT = 16

# A semaphore is bound to the loop it is first awaited on, so keep one per loop
_SEMAPHORES: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, asyncio.Semaphore]" = (
    weakref.WeakKeyDictionary()
)

async def run_io(func: Callable[..., Any], *args, **kwargs) -> Any:
    async with io_semaphore():
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(_SHARED_POOL, lambda: func(*args, **kwargs))

def shared_pool() -> ThreadPoolExecutor:
    return _SHARED_POOL

def io_semaphore() -> asyncio.Semaphore:
    loop = asyncio.get_running_loop()
    sem = _SEMAPHORES.get(loop)
    if sem is None:
        sem = asyncio.Semaphore(_IO_LIMIT)
        _SEMAPHORES[loop] = sem
    return sem
