from chronojob.worker.runner import (
    build_dispatcher,
    run_dispatch_loop,
    run_dispatch_once,
)

__all__ = [
    "build_dispatcher",
    "run_dispatch_once",
    "run_dispatch_loop",
]
