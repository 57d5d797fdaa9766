import httpx
import pytest


def ok_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.startswith("/fail"):
        raise httpx.ConnectError("connection refused", request=request)
    if request.url.path.startswith("/slow"):
        raise httpx.ReadTimeout("read timed out", request=request)
    if request.url.path.startswith("/missing"):
        return httpx.Response(404, text="not found")
    return httpx.Response(200, text="ok")


@pytest.fixture
def transport() -> httpx.MockTransport:
    return httpx.MockTransport(ok_handler)
