"""Mock FastAPI server for api-workbench integration tests.

It can be run standalone or spawned as a subprocess by pytest fixtures.

Usage:
    python -m tests.integration.mock_server --port 9999

Endpoints:
    /echo            Any method; returns method, query, headers and body as JSON
    /status/{code}   Responds with the given status code and a text body
    /slow?delay=N    Sleeps N seconds before responding
    /redirect        302 to /echo
    /bytes?n=N       N bytes of application/octet-stream
    /multi-header    Response carrying the same header twice
"""

from __future__ import annotations

import argparse
import asyncio

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.responses import RedirectResponse

app = FastAPI(title="api-workbench mock server")

ECHO_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@app.api_route("/echo", methods=ECHO_METHODS)
async def echo(request: Request):
    body = await request.body()
    return {
        "method": request.method,
        "path": request.url.path,
        "query": [[k, v] for k, v in request.query_params.multi_items()],
        "headers": [[k, v] for k, v in request.headers.items()],
        "body": body.decode("utf-8", errors="replace"),
    }


@app.get("/status/{code}")
async def status(code: int):
    return Response(content=f"status {code}", status_code=code, media_type="text/plain")


@app.get("/slow")
async def slow(delay: float = 1.0):
    await asyncio.sleep(delay)
    return {"delayed": delay}


@app.get("/redirect")
async def redirect():
    return RedirectResponse(url="/echo", status_code=302)


@app.get("/bytes")
async def raw_bytes(n: int = 16):
    return Response(
        content=bytes(i % 256 for i in range(n)),
        media_type="application/octet-stream",
    )


@app.get("/multi-header")
async def multi_header():
    response = Response(content="ok", media_type="text/plain")
    response.headers.append("X-Multi", "one")
    response.headers.append("X-Multi", "two")
    return response


# --- Main ---

def main():
    parser = argparse.ArgumentParser(description="Mock server for api-workbench tests")
    parser.add_argument("--port", type=int, default=9999, help="Port to listen on")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    args = parser.parse_args()

    uvicorn.run(app, host=args.host, port=args.port, log_level="warning")


if __name__ == "__main__":
    main()
