import json
import secrets
from threading import Lock

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from fake_registry.config import get_settings


app = FastAPI(title="Fake Registry")
security = HTTPBasic()

_lock = Lock()
_settings: dict[str, str] = {}


def authorize(credentials: HTTPBasicCredentials = Depends(security)) -> None:
    settings = get_settings()
    user_ok = secrets.compare_digest(credentials.username, settings.user)
    password_ok = secrets.compare_digest(credentials.password, settings.password)
    if not (user_ok and password_ok):
        raise HTTPException(
            status_code=401,
            detail="invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )


def reset() -> None:
    with _lock:
        _settings.clear()


@app.get("/healthz")
def healthz() -> dict:
    with _lock:
        instances = len(_settings)
    return {"status": "ok", "instances": instances}


@app.get("/instances/{instance_id}/settings", dependencies=[Depends(authorize)])
def read_settings(instance_id: str) -> dict:
    with _lock:
        document = _settings.get(instance_id)
    if document is None:
        raise HTTPException(status_code=404, detail="unknown instance")
    return {"settings": document, "status": "ok"}


@app.put("/instances/{instance_id}/settings", dependencies=[Depends(authorize)])
async def update_settings(instance_id: str, request: Request) -> dict:
    body = (await request.body()).decode("utf-8")
    try:
        json.loads(body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="settings must be JSON") from exc
    with _lock:
        _settings[instance_id] = body
    return {"status": "ok"}


@app.delete("/instances/{instance_id}/settings", dependencies=[Depends(authorize)])
def delete_settings(instance_id: str) -> dict:
    with _lock:
        existed = _settings.pop(instance_id, None) is not None
    if not existed:
        raise HTTPException(status_code=404, detail="unknown instance")
    return {"status": "ok"}
