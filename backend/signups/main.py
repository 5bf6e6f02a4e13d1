from typing import Awaitable, Callable

from fastapi import FastAPI, Request, Response

from .routers import events, sign_ups
from .utils.request_id import generate_request_id, set_request_id

REQUEST_ID_HEADER = "X-Request-ID"

app = FastAPI(title="Event Sign-Up API")


async def request_id_middleware(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
    set_request_id(request_id)
    try:
        response = await call_next(request)
    finally:
        set_request_id(None)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


app.middleware("http")(request_id_middleware)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(events.router)
app.include_router(sign_ups.router)
