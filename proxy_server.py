"""
Walkthrough Proxy Server

Trusted local intermediary for live step execution. The engine never talks
to a target API directly: it posts {method, url, headers, body} here and
gets back {status, data, headers}. Credentials and CORS stay on this side.

Usage:
    python -m uvicorn proxy_server:app --host 127.0.0.1 --port 3000
    # or
    WALKTHROUGH_PROXY_PORT=3000 python proxy_server.py
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from curl_cffi import requests
from curl_cffi.requests import exceptions as requests_exceptions
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from playwright.async_api import async_playwright
from pydantic import BaseModel, Field

from runner_config import REQUEST_TIMEOUT, SHELL_BIN, SHELL_TIMEOUT

logger = logging.getLogger(__name__)

BODY_METHODS = ("POST", "PUT", "PATCH", "DELETE")

# Command prefix per shell_type
SHELL_COMMANDS = {
    "bash": ["bash", "-c"],
    "sh": ["/bin/sh", "-c"],
    "powershell": ["powershell", "-Command"],
    "cmd": ["cmd", "/c"],
}

# --- In-memory state ---

open_browsers: list[Any] = []
_playwright: Any = None
_database_handler: Optional[Callable[["DatabaseRequest"], Awaitable[Any]]] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_browsers()


app = FastAPI(
    title="Walkthrough Proxy",
    description="Local proxy that performs live requests for walkthrough steps",
    version="1.0.0",
    lifespan=lifespan,
)


# --- Request models ---


class ExecuteRequest(BaseModel):
    method: str
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None


class GraphQLRequest(BaseModel):
    url: str
    query: str
    variables: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)


class ShellRequest(BaseModel):
    command: str
    shell_type: Optional[str] = None
    workdir: Optional[str] = None
    env: dict[str, str] = Field(default_factory=dict)


class DatabaseRequest(BaseModel):
    operation: str
    type: Optional[str] = None
    collection: Optional[str] = None
    table: Optional[str] = None
    query: Any = None
    update: Optional[dict[str, Any]] = None
    document: Optional[dict[str, Any]] = None
    projection: Optional[dict[str, int]] = None


class BrowserRequest(BaseModel):
    url: str


# --- Helpers ---


def set_database_handler(handler: Optional[Callable[[DatabaseRequest], Awaitable[Any]]]):
    """Register the coroutine that runs db steps; None disables the endpoint."""
    global _database_handler
    _database_handler = handler


def absolute_url(url: str, request: Request) -> str:
    """Relative URLs are resolved against this server."""
    if url.startswith("/"):
        return str(request.base_url).rstrip("/") + url
    return url


async def forward(method: str, url: str, headers: dict[str, str], body: Any) -> dict[str, Any]:
    """Perform one request against the target and wrap the reply."""
    send_headers = {"Content-Type": "application/json", **headers}
    kwargs: dict[str, Any] = {"headers": send_headers, "timeout": REQUEST_TIMEOUT}
    if body is not None and method.upper() in BODY_METHODS:
        kwargs["json"] = body

    async with requests.AsyncSession() as session:
        response = await session.request(method.upper(), url, **kwargs)

    try:
        data = response.json()
    except ValueError:
        data = response.text or None

    logger.info(f"{method.upper()} {url} -> {response.status_code}")
    return {
        "status": response.status_code,
        "data": data,
        "headers": dict(response.headers),
    }


def shell_command(shell_type: Optional[str], command: str) -> list[str]:
    prefix = SHELL_COMMANDS.get((shell_type or "").lower(), [SHELL_BIN, "-c"])
    return [*prefix, command]


# --- Endpoints ---


@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post("/api/execute")
async def execute(req: ExecuteRequest, request: Request):
    """Forward one HTTP request. Target 4xx/5xx come back as data with status 200."""
    if not req.method or not req.url:
        raise HTTPException(status_code=400, detail="Missing method or url")

    try:
        return await forward(req.method, absolute_url(req.url, request), req.headers, req.body)
    except requests_exceptions.RequestException as e:
        logger.warning(f"Proxy request failed: {e}")
        return JSONResponse(status_code=500, content={"error": str(e) or "Proxy request failed"})


@app.post("/api/execute-graphql")
async def execute_graphql(req: GraphQLRequest, request: Request):
    """Post a GraphQL query; the body's `errors` list is left for the caller."""
    body = {"query": req.query, "variables": req.variables}
    try:
        return await forward("POST", absolute_url(req.url, request), req.headers, body)
    except requests_exceptions.RequestException as e:
        logger.warning(f"GraphQL request failed: {e}")
        return JSONResponse(status_code=500, content={"error": str(e) or "GraphQL request failed"})


@app.post("/api/execute-shell")
async def execute_shell(req: ShellRequest):
    """
    Run a shell command and return its output.

    A non-zero exit code is a normal result, not an HTTP error.
    """
    if not req.command.strip():
        raise HTTPException(status_code=400, detail="Missing command")

    cmd = shell_command(req.shell_type, req.command)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=req.workdir or None,
            env={**os.environ, **req.env},
        )
    except OSError as e:
        return {"status": 1, "data": {"stdout": "", "stderr": str(e), "code": 1}}

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=SHELL_TIMEOUT)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.communicate()
        raise HTTPException(status_code=504, detail=f"Command timed out after {SHELL_TIMEOUT} seconds")

    code = proc.returncode if proc.returncode is not None else 1
    logger.info(f"shell exited {code}: {req.command}")
    return {
        "status": code,
        "data": {
            "stdout": stdout.decode("utf-8", errors="replace").strip(),
            "stderr": stderr.decode("utf-8", errors="replace").strip(),
            "code": code,
        },
    }


@app.post("/api/execute-db")
async def execute_db(req: DatabaseRequest):
    """Run a database operation through the registered handler."""
    if _database_handler is None:
        raise HTTPException(status_code=501, detail="No database handler configured")

    try:
        data = await _database_handler(req)
    except Exception as e:
        logger.warning(f"Database operation {req.operation} failed: {e}")
        return JSONResponse(status_code=500, content={"error": str(e) or "Database operation failed"})

    return {"status": 200, "data": data}


@app.post("/api/open-browser")
async def open_browser(req: BrowserRequest):
    """Open a URL in a visible Chromium window that stays open."""
    global _playwright

    try:
        if _playwright is None:
            _playwright = await async_playwright().start()
        browser = await _playwright.chromium.launch(headless=False)
        page = await browser.new_page()
        await page.goto(req.url, wait_until="domcontentloaded", timeout=60000)
    except Exception as e:
        logger.warning(f"Could not open browser: {e}")
        raise HTTPException(status_code=500, detail=f"Browser failed to open: {e}")

    open_browsers.append(browser)
    return {"status": 200, "data": {"url": req.url, "opened": True}}


async def close_browsers():
    global _playwright
    while open_browsers:
        browser = open_browsers.pop()
        try:
            await browser.close()
        except Exception as e:
            logger.debug(f"Browser already closed: {e}")
    if _playwright is not None:
        await _playwright.stop()
        _playwright = None


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    port = int(os.environ.get("WALKTHROUGH_PROXY_PORT", "3000"))
    uvicorn.run(app, host="127.0.0.1", port=port)
