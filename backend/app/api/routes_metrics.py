import secrets

from fastapi import APIRouter, HTTPException, Request, Response

router = APIRouter()


@router.get("/metrics", include_in_schema=False)
async def metrics_endpoint(request: Request) -> Response:
    metrics_client = getattr(request.app.state, "metrics", None)
    if metrics_client is None or not getattr(metrics_client, "enabled", False):
        raise HTTPException(status_code=404, detail="Metrics disabled")

    app_settings = getattr(request.app.state, "app_settings", None)
    token = getattr(app_settings, "metrics_token", None)
    if token:
        auth_header = request.headers.get("Authorization") or ""
        provided = auth_header.split(" ", 1)[1] if auth_header.lower().startswith("bearer ") else None
        if not provided or not secrets.compare_digest(provided, token):
            raise HTTPException(status_code=401, detail="Unauthorized")
    elif getattr(app_settings, "app_env", "prod") == "prod":
        raise HTTPException(status_code=500, detail="Metrics token misconfigured")

    payload, content_type = metrics_client.render()
    return Response(content=payload, media_type=content_type)
