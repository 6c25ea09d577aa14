from fastapi import HTTPException, Request

from .pipeline import Pipeline


def get_pipeline(request: Request) -> Pipeline:
    # Built once at startup (see main._startup); tests override this dependency with a fake store.
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="store not initialised")
    return pipeline
