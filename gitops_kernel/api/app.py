"""
GitOps Kernel API — FastAPI endpoints.

The operator command surface:
- trigger-sync, abort-sync and status per environment
- Sync history and notification inspection
- Reconciler control and configuration
"""

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from gitops_kernel.cluster.client import ClusterClient, InMemoryCluster
from gitops_kernel.config import GitOpsConfig, load_config
from gitops_kernel.errors import GitOpsError, UnknownEnvironment
from gitops_kernel.history.store import SyncHistoryStore
from gitops_kernel.models.reconciler import ReconcilerConfig
from gitops_kernel.notifications.sink import FanoutSink, InMemorySink, LoggingSink
from gitops_kernel.reconciler.loop import ReconcilerLoop
from gitops_kernel.source.git_source import GitManifestSource, ManifestSource


def build_cluster(config: GitOpsConfig) -> ClusterClient:
    """Instantiate the configured cluster backend."""
    if config.cluster.backend == "kubernetes":
        from gitops_kernel.cluster.kubernetes import KubernetesCluster

        return KubernetesCluster(
            kubeconfig=config.cluster.kubeconfig,
            context=config.cluster.context,
            in_cluster=config.cluster.in_cluster,
            request_timeout=config.reconciler.apply_timeout_seconds,
        )
    return InMemoryCluster()


# --- Application Factory ---

def create_app(
    config: Optional[GitOpsConfig] = None,
    source: Optional[ManifestSource] = None,
    cluster: Optional[ClusterClient] = None,
    history: Optional[SyncHistoryStore] = None,
    run_loop: bool = False,
) -> FastAPI:
    """
    Create and configure the FastAPI application. With ``run_loop`` the
    reconciler heartbeat runs in the background for the app's lifetime.
    """
    config = config or load_config()

    events = InMemorySink()
    reconciler = ReconcilerLoop(
        environments=config.environments,
        source=source or GitManifestSource(config.repository, cache_dir=config.cache_dir),
        cluster=cluster or build_cluster(config),
        history=history or SyncHistoryStore(config.history_db),
        notifier=FanoutSink([LoggingSink(), events]),
        config=config.reconciler,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not run_loop:
            yield
            return
        stop = asyncio.Event()
        task = asyncio.create_task(reconciler.run_async(stop))
        try:
            yield
        finally:
            stop.set()
            await task

    app = FastAPI(
        title="GitOps Kernel API",
        description="Declarative desired-state reconciliation",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store components on app state for access in endpoints
    app.state.reconciler = reconciler
    app.state.events = events

    @app.exception_handler(UnknownEnvironment)
    async def unknown_environment(request: Request, exc: UnknownEnvironment):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(GitOpsError)
    async def gitops_error(request: Request, exc: GitOpsError):
        return JSONResponse(
            status_code=503,
            content={"detail": str(exc), "error_type": type(exc).__name__},
        )

    # === ENVIRONMENTS ===

    @app.get("/environments")
    def list_environments():
        """All environments with their current decision and health."""
        result = []
        for env in reconciler.scheduler.environments():
            record = reconciler.scheduler.record(env.name)
            result.append({
                "name": env.name,
                "namespace": env.namespace,
                "sync_policy": env.sync_policy.value,
                "state": record.state.value,
                "last_decision": record.last_decision.value if record.last_decision else None,
                "health": record.health.state.value if record.health else None,
            })
        return result

    @app.get("/environments/{name}/status")
    def get_status(name: str):
        """get-status: scheduler state, revisions, health and last sync."""
        return reconciler.get_status(name)

    @app.post("/environments/{name}/sync")
    def trigger_sync(name: str):
        """trigger-sync: apply the current delta regardless of policy."""
        result = reconciler.trigger_sync(name)
        if result.get("decision") == "queued":
            return JSONResponse(status_code=202, content=result)
        return result

    @app.get("/environments/{name}/diff")
    def get_diff(name: str):
        """The delta the next pass would act on, without applying it."""
        return reconciler.preview(name).model_dump(mode="json")

    @app.post("/environments/{name}/abort")
    def abort_sync(name: str):
        """abort-sync: cancel an in-flight apply, leaving applied work in place."""
        if not reconciler.abort_sync(name):
            raise HTTPException(409, "No sync in progress")
        return {"status": "aborting", "environment": name}

    @app.get("/environments/{name}/history")
    def get_history(name: str, limit: int = 50):
        """Recent sync operations for an environment."""
        reconciler.scheduler.environment(name)
        return [
            op.model_dump(mode="json")
            for op in reconciler.history.query_by_environment(name, limit=limit)
        ]

    @app.get("/environments/{name}/events")
    def get_events(name: str):
        """Notifications emitted for an environment."""
        reconciler.scheduler.environment(name)
        return [n.model_dump(mode="json") for n in events.events(name)]

    @app.get("/syncs/{sync_id}")
    def get_sync(sync_id: str):
        operation = reconciler.history.get(sync_id)
        if not operation:
            raise HTTPException(404, "Sync operation not found")
        return operation.model_dump(mode="json")

    # === RECONCILER ===

    @app.get("/reconciler/status")
    def reconciler_status():
        """Current reconciler loop status."""
        return {
            "status": reconciler.status,
            "config": reconciler.config.model_dump(),
            "environments": len(reconciler.scheduler.environments()),
            "sync_operations": reconciler.history.count(),
        }

    @app.post("/reconciler/trigger")
    def trigger_reconciliation():
        """Force a reconciliation pass for every environment."""
        results: List[dict] = reconciler.reconcile_once()
        return {"results": results, "environment_count": len(results)}

    @app.get("/reconciler/config")
    def get_reconciler_config():
        """Current reconciler configuration."""
        return reconciler.config.model_dump()

    @app.put("/reconciler/config")
    def update_reconciler_config(new_config: ReconcilerConfig):
        """Update the reconciler settings; they apply from the next operation."""
        reconciler.update_config(new_config)
        return new_config.model_dump()

    return app

