from .executors import run_io, shared_pool, io_semaphore

__all__ = ["run_io", "shared_pool", "io_semaphore"]
