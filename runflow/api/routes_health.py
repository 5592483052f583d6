from fastapi import APIRouter, Depends

from runflow.api.dependencies import get_runtime
from runflow.services.runtime import Runtime

router = APIRouter(tags=["health"])


@router.get("/health")
def health(runtime: Runtime = Depends(get_runtime)):
    s = runtime.settings
    return {
        "status": "ok",
        "app": s.APP_NAME,
        "env": s.ENV,
        "storage_backend": s.STORAGE_BACKEND,
        "checkpoint_backend": s.CHECKPOINT_BACKEND,
        "graphs": runtime.graphs.graph_ids(),
        "worker": runtime.worker.status_snapshot(),
    }
