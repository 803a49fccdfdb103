"""
Stub Windchill OData backend for local development.

Speaks just enough of the real protocol to exercise the gateway: Basic auth,
the ``X-CSRF-Token: Fetch`` handshake, CSRF enforcement on mutating calls,
and a parts collection under /servlet/odata/ProdMgmt.

    uvicorn dev_backend.main:app --port 8080
"""
from __future__ import annotations

import os
import re
import secrets
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

SERVICE_NAME = os.getenv("SERVICE_NAME", "windchill-dev")
API_PATH = "/servlet/odata"
CSRF_HEADER = "X-CSRF-Token"

_CLAUSE = re.compile(r"^(?:(\w+(?:/\w+)?) eq '(.*)'|startswith\((\w+(?:/\w+)?),'(.*)'\))$")
_PART_KEY = re.compile(r"^Parts\('(.+)'\)(/Structure)?$")


def _odata_error(status_code: int, message: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        {"error": {"code": str(status_code), "message": message}},
        status_code=status_code,
        headers=headers,
    )


def _field(part: Dict[str, Any], prop: str) -> str:
    value: Any = part
    for key in prop.split("/"):
        value = value.get(key, {}) if isinstance(value, dict) else ""
    return str(value or "")


def _matches(part: Dict[str, Any], odata_filter: str) -> bool:
    for clause in odata_filter.split(" and "):
        match = _CLAUSE.match(clause.strip())
        if match is None:
            continue
        if match.group(1):
            if _field(part, match.group(1)) != match.group(2).replace("''", "'"):
                return False
        elif not _field(part, match.group(3)).startswith(match.group(4).replace("''", "'")):
            return False
    return True


def create_app() -> FastAPI:
    app = FastAPI(title=f"Dev stub backend for {SERVICE_NAME}")
    app.state.csrf_token = secrets.token_hex(16)
    app.state.csrf_fetches = 0
    app.state.parts = []

    def add_part(number: str, name: str, description: str = "") -> Dict[str, Any]:
        part = {
            "ID": f"OR:wt.part.WTPart:{len(app.state.parts) + 1}",
            "Number": number,
            "Name": name,
            "Description": description,
            "State": {"Value": "INWORK", "Display": "In Work"},
        }
        app.state.parts.append(part)
        return part

    add_part("0000000001", "BRACKET")
    add_part("0000000002", "BRACKET ASSEMBLY")

    def find(part_id: str) -> Optional[Dict[str, Any]]:
        return next((p for p in app.state.parts if p["ID"] == part_id), None)

    @app.middleware("http")
    async def require_basic_auth(request: Request, call_next):
        if not request.headers.get("authorization", "").startswith("Basic "):
            return _odata_error(401, "Authentication required", {"WWW-Authenticate": "Basic"})
        return await call_next(request)

    @app.get("/servlet/WindchillAuthGW/wt.httpgw.HTTPServer/")
    async def http_server() -> Dict[str, Any]:
        return {"service": SERVICE_NAME, "status": "ok"}

    @app.get(API_PATH + "/")
    async def service_root(request: Request) -> JSONResponse:
        headers = {}
        if request.headers.get(CSRF_HEADER, "").lower() == "fetch":
            app.state.csrf_fetches += 1
            headers[CSRF_HEADER] = app.state.csrf_token
        return JSONResponse({"value": [{"name": "ProdMgmt", "url": "ProdMgmt"}]}, headers=headers)

    @app.post("/_dev/rotate-csrf")
    async def rotate_csrf() -> Dict[str, Any]:
        app.state.csrf_token = secrets.token_hex(16)
        return {"rotated": True}

    @app.get(API_PATH + "/ProdMgmt/{resource:path}")
    async def read_parts(resource: str, request: Request) -> JSONResponse:
        if resource == "Parts":
            odata_filter = request.query_params.get("$filter", "")
            found = [p for p in app.state.parts if _matches(p, odata_filter)]
            top = request.query_params.get("$top")
            if top and top.isdigit():
                found = found[: int(top)]
            return JSONResponse({"value": found})
        match = _PART_KEY.match(resource)
        if match is None:
            return _odata_error(404, f"Resource not found: {resource}")
        part = find(match.group(1))
        if part is None:
            return _odata_error(404, f"Part {match.group(1)} not found")
        if match.group(2):
            return JSONResponse({"Part": part, "Levels": request.query_params.get("levels", "1"), "Components": []})
        return JSONResponse(part)

    @app.post(API_PATH + "/ProdMgmt/Parts")
    async def create_part(request: Request) -> JSONResponse:
        if request.headers.get(CSRF_HEADER) != app.state.csrf_token:
            return JSONResponse(
                {"error": {"code": "403", "message": "CSRF token validation failed"}},
                status_code=403,
                headers={CSRF_HEADER: "Required"},
            )
        payload = await request.json()
        if not payload.get("Number") or not payload.get("Name"):
            return _odata_error(400, "Number and Name are required")
        part = add_part(payload["Number"], payload["Name"], payload.get("Description", ""))
        return JSONResponse(part, status_code=201)

    return app


app = create_app()
