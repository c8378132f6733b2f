"""Health check endpoint."""
from fastapi import APIRouter
from starlette.requests import Request

router = APIRouter()


@router.get("/health")
def health(request: Request):
    settings = request.app.state.settings
    checks = {"app": "ok"}

    # Projects root must be a readable directory
    projects_dir = settings.projects_dir
    try:
        if not projects_dir.is_dir():
            raise FileNotFoundError(str(projects_dir))
        next(projects_dir.iterdir(), None)
        checks["storage"] = "ok"
    except OSError as e:
        checks["storage"] = f"error: {type(e).__name__}"
        return {"status": "unhealthy", "checks": checks, "version": settings.app_version}

    return {"status": "ok", "checks": checks, "version": settings.app_version}
