from contextlib import asynccontextmanager
from typing import Any


def create_app(*, db_path: str | None = None):
    # Lazy import so core CLI works without web deps.
    from fastapi import FastAPI, Request
    from fastapi.responses import JSONResponse

    from ..config import Settings
    from ..graph import MODES, GraphStore, StorageUnavailable

    settings = Settings()
    db_default = db_path or settings.db_path

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.store = await GraphStore.open(db_default)
        try:
            yield
        finally:
            await app.state.store.close()

    app = FastAPI(title="History Bowl Graph", version="0.1.0", lifespan=lifespan)

    def _store(request: Request) -> GraphStore:
        return request.app.state.store

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable(request: Request, exc: StorageUnavailable):
        return JSONResponse({"ok": False, "error": "Unable to load/save progress", "detail": str(exc)}, status_code=503)

    @app.get("/api/health")
    async def health():
        return {"ok": True, "db_path": db_default}

    @app.get("/api/divisions/{division}/nodes")
    async def division_nodes(division: str, request: Request):
        nodes = await _store(request).nodes_by_division(division)
        return {"ok": True, "nodes": [n.to_dict() for n in nodes]}

    @app.get("/api/nodes/{node_id}")
    async def node(node_id: str, request: Request):
        store = _store(request)
        n = await store.get_node(node_id)
        if n is None:
            return JSONResponse({"ok": False, "error": "Not found"}, status_code=404)
        questions = await store.questions_for_node(node_id)
        return {"ok": True, "node": n.to_dict(), "question_ids": questions}

    @app.get("/api/nodes/{node_id}/related")
    async def related(node_id: str, request: Request):
        nodes = await _store(request).related_nodes(node_id)
        return {"ok": True, "nodes": [n.to_dict() for n in nodes]}

    @app.get("/api/progress/{node_id}")
    async def get_progress(node_id: str, request: Request):
        p = await _store(request).get_progress(node_id)
        if p is None:
            return JSONResponse({"ok": False, "error": "No progress recorded"}, status_code=404)
        return {"ok": True, "progress": p.to_dict(), "platinum": p.is_platinum()}

    @app.post("/api/progress")
    async def update_progress(payload: dict[str, Any], request: Request):
        node_id = str(payload.get("node_id") or "").strip()
        mode = str(payload.get("mode") or "")
        correct = payload.get("correct")
        if not node_id:
            return JSONResponse({"ok": False, "error": "node_id is required"}, status_code=400)
        if not isinstance(correct, bool):
            return JSONResponse({"ok": False, "error": "correct must be true or false"}, status_code=400)
        if mode not in MODES:
            return JSONResponse({"ok": False, "error": f"mode must be one of: {', '.join(MODES)}"}, status_code=400)

        p = await _store(request).update_progress(node_id, correct, mode)
        return {"ok": True, "progress": p.to_dict(), "platinum": p.is_platinum()}

    @app.post("/api/wrong-answers")
    async def wrong_answer(payload: dict[str, Any], request: Request):
        wid = await _store(request).record_wrong_answer(payload)
        return {"ok": True, "id": wid}

    @app.get("/api/wrong-answers")
    async def wrong_answers(request: Request, limit: int = 50):
        rows = await _store(request).wrong_answers(limit=int(limit))
        return {"ok": True, "wrong_answers": rows}

    @app.get("/api/stats")
    async def stats(request: Request, division: str | None = None):
        res = await _store(request).mastery_stats(division)
        return {"ok": True, "stats": res}

    return app
